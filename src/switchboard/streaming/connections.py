"""Server-sent event connections, one per session.

Each streaming request owns an ``SSETransport``: a frame queue that the HTTP
response drains through ``frames()``. The ``ConnectionManager`` maps session
ids to transports, enforces the connection cap, keeps idle streams open with
comment frames and closes everything on shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from switchboard.metrics import AgentMetrics
from switchboard.streaming.events import KEEP_ALIVE_FRAME, EventType, format_event

logger = logging.getLogger(__name__)


class SSETransport:
    """Single-writer frame queue backing one SSE response.

    Event frames are never dropped: a slow client only grows the backlog.
    ``backlog_limit`` bounds the backlog that droppable frames (keep-alives)
    may join.
    """

    def __init__(self, backlog_limit: int = 256):
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._backlog_limit = backlog_limit
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def write(self, frame: str, droppable: bool = False) -> bool:
        """Queue a frame. Returns False if closed, or if a droppable frame was skipped."""
        if self._closed:
            return False
        if droppable and self._queue.qsize() >= self._backlog_limit:
            return False
        self._queue.put_nowait(frame)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


@dataclass
class ProgressConnection:
    session_id: str
    transport: SSETransport
    label: str = ""
    start_time: float = field(default_factory=time.monotonic)
    tools_used: list[str] = field(default_factory=list)
    keep_alive: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def is_alive(self) -> bool:
        return not self.transport.closed


class ConnectionManager:
    """Tracks open SSE connections by session id."""

    def __init__(
        self,
        max_connections: int = 50,
        keep_alive_interval: float = 15.0,
        metrics: AgentMetrics | None = None,
    ):
        self.max_connections = max_connections
        self.keep_alive_interval = keep_alive_interval
        self._connections: dict[str, ProgressConnection] = {}
        self._metrics = metrics

    @property
    def active_count(self) -> int:
        return len(self._connections)

    def has(self, session_id: str) -> bool:
        return session_id in self._connections

    def add(self, session_id: str, transport: SSETransport, label: str = "") -> bool:
        """Register a transport for a session.

        Returns False at capacity without touching the transport. A previous
        connection for the same session is closed first.
        """
        if len(self._connections) >= self.max_connections:
            logger.warning("SSE connection limit reached (%d)", self.max_connections)
            return False

        self.close(session_id)
        connection = ProgressConnection(session_id=session_id, transport=transport, label=label)
        connection.keep_alive = asyncio.create_task(self._keep_alive(connection))
        self._connections[session_id] = connection
        self._update_gauge()
        logger.info("SSE connection added: %s (total: %d)", session_id, len(self._connections))
        return True

    async def _keep_alive(self, connection: ProgressConnection) -> None:
        while connection.is_alive:
            await asyncio.sleep(self.keep_alive_interval)
            if connection.is_alive:
                connection.transport.write(KEEP_ALIVE_FRAME, droppable=True)

    def _owned(self, session_id: str, transport: SSETransport | None) -> ProgressConnection | None:
        connection = self._connections.get(session_id)
        if connection is None:
            return None
        if transport is not None and connection.transport is not transport:
            return None
        return connection

    def send_event(
        self,
        session_id: str,
        event: EventType | str,
        payload: dict[str, Any],
        transport: SSETransport | None = None,
    ) -> bool:
        """Write one event frame to a session's connection.

        With ``transport``, returns False unless that transport still owns the
        slot, so a replaced run cannot write into its successor's stream.
        """
        connection = self._owned(session_id, transport)
        if connection is None or not connection.is_alive:
            return False
        if event == EventType.TOOL_USE and payload.get("tool"):
            connection.tools_used.append(payload["tool"])
        return connection.transport.write(format_event(event, payload))

    def send_progress(
        self, session_id: str, message: str, transport: SSETransport | None = None
    ) -> bool:
        connection = self._owned(session_id, transport)
        if connection is None:
            return False
        if connection.label:
            message = f"[{connection.label}] {message}"
        return self.send_event(
            session_id,
            EventType.PROGRESS,
            {"message": message, "timestamp": self.elapsed_ms(session_id)},
            transport,
        )

    def elapsed_ms(self, session_id: str) -> int:
        connection = self._connections.get(session_id)
        if connection is None:
            return 0
        return int((time.monotonic() - connection.start_time) * 1000)

    def tools_used(self, session_id: str) -> list[str]:
        connection = self._connections.get(session_id)
        return list(connection.tools_used) if connection else []

    def close(self, session_id: str, transport: SSETransport | None = None) -> None:
        """Close a session's connection. Safe to call repeatedly.

        With ``transport``, only closes when that transport still owns the slot,
        so a stale request cannot close its replacement.
        """
        connection = self._owned(session_id, transport)
        if connection is None:
            return
        del self._connections[session_id]
        if connection.keep_alive is not None:
            connection.keep_alive.cancel()
        connection.transport.close()
        self._update_gauge()
        logger.info("SSE connection closed: %s (remaining: %d)", session_id, len(self._connections))

    async def close_all(self) -> None:
        """Notify every client of the shutdown, then close all connections."""
        logger.info("Closing %d SSE connections", len(self._connections))
        tasks = []
        for session_id in list(self._connections):
            self.send_event(
                session_id,
                EventType.SERVER_SHUTDOWN,
                {"message": "Server shutting down, please reconnect"},
            )
            task = self._connections[session_id].keep_alive
            if task is not None:
                tasks.append(task)
            self.close(session_id)
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def stats(self) -> dict[str, Any]:
        return {
            "activeConnections": len(self._connections),
            "maxConnections": self.max_connections,
            "sessions": [
                {
                    "sessionId": sid,
                    "duration_ms": self.elapsed_ms(sid),
                    "toolsUsed": len(conn.tools_used),
                    "isAlive": conn.is_alive,
                }
                for sid, conn in self._connections.items()
            ],
        }

    def _update_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.sse_connections_active.set(len(self._connections))
