"""Conversation sessions on top of the key-value session store.

A session holds the bounded message history, a free-form context map and
usage metadata for one conversation. All reads and writes go through
``SessionManager``; callers never keep a copy across requests.

When the backing store is unreachable every operation degrades to an
ephemeral in-memory session (reads) or a logged no-op (writes) so that the
request itself still succeeds, just without cross-turn memory.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from switchboard.errors import SessionStoreError
from switchboard.session import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = 86400
DEFAULT_MAX_HISTORY = 20
DEFAULT_KEY_PREFIX = "switchboard:session:"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenCounters:
    """Cumulative model usage for a session."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def add(self, usage: dict[str, int]) -> None:
        self.input_tokens += int(usage.get("input_tokens") or 0)
        self.output_tokens += int(usage.get("output_tokens") or 0)
        self.cache_creation_tokens += int(usage.get("cache_creation_input_tokens") or 0)
        self.cache_read_tokens += int(usage.get("cache_read_input_tokens") or 0)

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "cacheReadTokens": self.cache_read_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenCounters:
        if not data:
            return cls()
        return cls(
            input_tokens=int(data.get("inputTokens") or 0),
            output_tokens=int(data.get("outputTokens") or 0),
            cache_creation_tokens=int(data.get("cacheCreationTokens") or 0),
            cache_read_tokens=int(data.get("cacheReadTokens") or 0),
        )


@dataclass
class SessionMetadata:
    turn_count: int = 0
    tools_used: list[str] = field(default_factory=list)
    token_counters: TokenCounters = field(default_factory=TokenCounters)

    def record_tools(self, names: list[str]) -> None:
        for name in names:
            if name and name not in self.tools_used:
                self.tools_used.append(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "turnCount": self.turn_count,
            "toolsUsed": list(self.tools_used),
            "tokenCounters": self.token_counters.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SessionMetadata:
        if not data:
            return cls()
        return cls(
            turn_count=int(data.get("turnCount") or 0),
            tools_used=list(data.get("toolsUsed") or []),
            token_counters=TokenCounters.from_dict(data.get("tokenCounters")),
        )


@dataclass
class Session:
    """Typed session record. JSON-safe for the key-value store."""

    id: str
    history: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=_now_ms)
    last_accessed_at: int = field(default_factory=_now_ms)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    ephemeral: bool = False  # True when built by the store-down fallback

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the key-value store."""
        return {
            "id": self.id,
            "history": self.history,
            "context": self.context,
            "createdAt": self.created_at,
            "lastAccessedAt": self.last_accessed_at,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Deserialize from the key-value store."""
        return cls(
            id=str(data["id"]),
            history=list(data.get("history") or []),
            context=dict(data.get("context") or {}),
            created_at=int(data.get("createdAt") or _now_ms()),
            last_accessed_at=int(data.get("lastAccessedAt") or _now_ms()),
            metadata=SessionMetadata.from_dict(data.get("metadata")),
        )


def _tool_names(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []
    return [
        str(block.get("name"))
        for block in content
        if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name")
    ]


class SessionManager:
    """TTL-bound conversation sessions keyed by session id."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl: int = DEFAULT_TTL,
        max_history: int = DEFAULT_MAX_HISTORY,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ):
        self._store = store
        self._ttl = ttl
        self._max_history = max_history
        self._prefix = key_prefix
        # Serializes read-modify-write cycles inside this process.
        self._lock = asyncio.Lock()

    @property
    def max_history(self) -> int:
        return self._max_history

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    async def _load(self, session_id: str) -> Session | None:
        raw = await self._store.get(self._key(session_id))
        if not raw:
            return None
        try:
            return Session.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed session record %s", session_id)
            return None

    async def _save(self, session: Session) -> None:
        session.last_accessed_at = _now_ms()
        if len(session.history) > self._max_history:
            session.history = session.history[-self._max_history:]
            logger.debug("Pruned history of %s to %d messages", session.id, self._max_history)
        await self._store.set(self._key(session.id), session.to_dict(), self._ttl)

    async def _get_or_create(self, session_id: str) -> Session:
        session = await self._load(session_id)
        if session is None:
            session = Session(id=session_id)
            logger.info("Created session %s", session_id)
        await self._save(session)
        return session

    async def get_or_create(self, session_id: str) -> Session:
        """Return the session, creating it on first use. Refreshes the TTL."""
        async with self._lock:
            try:
                return await self._get_or_create(session_id)
            except SessionStoreError as e:
                logger.error("Session store error, using in-memory fallback: %s", e)
                return Session(id=session_id, ephemeral=True)

    async def _mutate(self, session_id: str, change) -> None:
        async with self._lock:
            try:
                session = await self._get_or_create(session_id)
                change(session)
                await self._save(session)
            except SessionStoreError as e:
                logger.error("Session store error, update of %s dropped: %s", session_id, e)

    async def add_message(self, session_id: str, role: str, content: Any) -> None:
        """Append a message and truncate history to the last ``max_history`` entries."""

        def change(session: Session) -> None:
            session.history.append({"role": role, "content": content})
            session.metadata.turn_count += 1
            session.metadata.record_tools(_tool_names(content))

        await self._mutate(session_id, change)

    async def update_context(self, session_id: str, partial: dict[str, Any]) -> None:
        """Shallow-merge ``partial`` into the session context."""

        def change(session: Session) -> None:
            session.context = {**session.context, **partial}

        await self._mutate(session_id, change)

    async def update_metadata(
        self,
        session_id: str,
        usage: dict[str, int] | None = None,
        tools_used: list[str] | None = None,
    ) -> None:
        """Add token counters and tool names to the session metadata."""

        def change(session: Session) -> None:
            if usage:
                session.metadata.token_counters.add(usage)
            if tools_used:
                session.metadata.record_tools(tools_used)

        await self._mutate(session_id, change)

    async def get_history(self, session_id: str) -> list[dict[str, Any]]:
        return (await self.get_or_create(session_id)).history

    async def get_context(self, session_id: str) -> dict[str, Any]:
        return (await self.get_or_create(session_id)).context

    async def get(self, session_id: str) -> Session | None:
        """Return an existing session without creating or touching it."""
        try:
            return await self._load(session_id)
        except SessionStoreError as e:
            logger.error("Session store error reading %s: %s", session_id, e)
            return None

    async def clear(self, session_id: str) -> None:
        try:
            await self._store.delete(self._key(session_id))
            logger.info("Deleted session %s", session_id)
        except SessionStoreError as e:
            logger.error("Error deleting session %s: %s", session_id, e)

    async def list(self) -> list[str]:
        """List all active session ids."""
        try:
            keys = await self._store.keys(self._prefix)
        except SessionStoreError as e:
            logger.error("Error listing sessions: %s", e)
            return []
        return [k[len(self._prefix):] for k in keys]

    async def cleanup(self, max_age_seconds: int = DEFAULT_TTL) -> int:
        """Delete sessions idle for longer than ``max_age_seconds``."""
        cleaned = 0
        now = _now_ms()
        for session_id in await self.list():
            session = await self.get(session_id)
            if session is None:
                continue
            if now - session.last_accessed_at > max_age_seconds * 1000:
                await self.clear(session_id)
                cleaned += 1
        if cleaned:
            logger.info("Cleaned %d expired sessions", cleaned)
        return cleaned

    async def stats(self) -> dict[str, Any]:
        """Session count plus per-session age and size."""
        now = _now_ms()
        details: list[dict[str, Any]] = []
        total_messages = 0
        for session_id in await self.list():
            session = await self.get(session_id)
            if session is None:
                continue
            total_messages += len(session.history)
            details.append(
                {
                    "id": session_id,
                    "messageCount": len(session.history),
                    "ageMinutes": (now - session.created_at) // 60000,
                    "turnCount": session.metadata.turn_count,
                    "toolsUsed": len(session.metadata.tools_used),
                    "createdAt": session.created_at,
                }
            )
        created = [d["createdAt"] for d in details]
        return {
            "activeSessions": len(details),
            "sessions": details,
            "oldestSession": min(created) if created else None,
            "newestSession": max(created) if created else None,
            "totalMessages": total_messages,
        }

    async def health_check(self) -> bool:
        """Liveness probe for the backing store, independent of normal operations."""
        try:
            return await self._store.ping()
        except Exception:
            return False

    async def aclose(self) -> None:
        await self._store.close()
