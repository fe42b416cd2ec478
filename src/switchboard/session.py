"""Session state storage for multi-turn conversations.

Provides pluggable key-value backends (memory, Redis) that hold one JSON
record per session. ``switchboard.llm.sessions.SessionManager`` owns the
record layout; the backends only know keys, values and TTLs.

Usage:
    # Memory store (default, single process)
    session:
      store: memory
      maxsize: 500
      ttl: 86400

    # Redis store (multi-worker, survives restarts)
    session:
      store: redis
      url: redis://localhost:6379
      ttl: 86400

    # Or via environment variables
    SESSION_STORE=redis
    SESSION_URL=redis://localhost:6379
    SESSION_TTL=86400
"""
from __future__ import annotations

import os
from typing import Any, Protocol

from switchboard.backends.session.memory import MemoryKeyValueStore
from switchboard.backends.session.redis import RedisKeyValueStore


class KeyValueStore(Protocol):
    """Interface for the session backing store (get/set/expire contract)."""

    async def get(self, key: str) -> dict[str, Any] | None:
        """Get a record by key. Returns None if not found or expired."""
        ...

    async def set(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        """Write a record and restart its TTL."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a record."""
        ...

    async def keys(self, prefix: str = "") -> list[str]:
        """List live keys starting with prefix."""
        ...

    async def ping(self) -> bool:
        """Liveness probe. Never raises."""
        ...

    async def close(self) -> None:
        """Release connections or cached data held by the backend."""
        ...


def _load_session_config() -> Any | None:
    """Best-effort settings loader for session config."""
    try:
        from switchboard.settings import load_settings
        return load_settings().session
    except Exception:
        return None


def _int_with_default(value: str | None, default: int) -> int:
    """Parse int env values safely with fallback."""
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def create_session_store() -> KeyValueStore:
    """Factory to create the session backing store based on config.

    Precedence for all fields: env vars > switchboard.yaml > defaults.
    """
    session_cfg = _load_session_config()
    store_type = (
        (os.getenv("SESSION_STORE") or (getattr(session_cfg, "store", None) if session_cfg else None) or "memory")
        .strip()
        .lower()
    )
    ttl = _int_with_default(
        os.getenv("SESSION_TTL"),
        getattr(session_cfg, "ttl", 86400) if session_cfg else 86400,
    )

    if store_type == "redis":
        url = (
            os.getenv("SESSION_URL")
            or os.getenv("REDIS_URL")
            or (getattr(session_cfg, "url", None) if session_cfg else None)
            or "redis://localhost:6379"
        )
        return RedisKeyValueStore(url=url, ttl=ttl)

    if store_type != "memory":
        raise ValueError(f"Unknown session store '{store_type}'. Use 'memory' or 'redis'.")

    maxsize = _int_with_default(
        os.getenv("SESSION_MAXSIZE"),
        getattr(session_cfg, "maxsize", 500) if session_cfg else 500,
    )
    return MemoryKeyValueStore(maxsize=maxsize, ttl=ttl)
