"""In-memory session store backend."""

from __future__ import annotations

from typing import Any

from cachetools import TTLCache


class MemoryKeyValueStore:
    """In-memory key-value store using cachetools TTLCache.

    Suitable for single-process deployments or development. Entries share the
    cache-wide TTL; ``set`` re-inserts the key, which restarts its clock.
    """

    def __init__(self, maxsize: int = 500, ttl: int = 86400):
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    async def get(self, key: str) -> dict[str, Any] | None:
        return self._cache.get(key)

    async def set(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        self._cache.pop(key, None)
        self._cache[key] = value

    async def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in list(self._cache.keys()) if k.startswith(prefix)]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._cache.clear()
