"""Redis-backed session store backend."""

from __future__ import annotations

import json
import logging
from typing import Any

from switchboard.errors import SessionStoreError

logger = logging.getLogger(__name__)


class RedisKeyValueStore:
    """Redis-backed key-value store (``redis.asyncio``).

    Suitable for multi-worker deployments and survives process restarts.
    Every ``set`` is a ``SETEX`` so the TTL restarts on each write. Redis
    failures surface as ``SessionStoreError``.
    """

    def __init__(self, url: str = "redis://localhost:6379", ttl: int = 86400, client: Any = None):
        if client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError as err:
                raise ImportError(
                    "Redis session store requires redis package. Install with: uv add redis"
                ) from err
            client = aioredis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
            )
        self._client = client
        self._url = url
        self._ttl = ttl

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            data = await self._client.get(key)
        except Exception as e:
            raise SessionStoreError(f"Redis GET failed for {key}: {e}") from e
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable session record %s", key)
            return None

    async def set(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        try:
            await self._client.setex(key, ttl or self._ttl, json.dumps(value))
        except Exception as e:
            raise SessionStoreError(f"Redis SETEX failed for {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except Exception as e:
            raise SessionStoreError(f"Redis DEL failed for {key}: {e}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            return [k async for k in self._client.scan_iter(match=f"{prefix}*")]
        except Exception as e:
            raise SessionStoreError(f"Redis SCAN failed for {prefix}*: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._client.aclose()
