"""SSE event names and frame encoding."""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any

KEEP_ALIVE_FRAME = ": keep-alive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class EventType(str, Enum):
    METADATA = "metadata"
    PROGRESS = "progress"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    STREAM_CHUNK = "stream_chunk"
    CACHE_HIT = "cache_hit"
    RESULT = "result"
    DONE = "done"
    ERROR = "error"
    SERVER_SHUTDOWN = "server_shutdown"


def format_event(event: EventType | str, payload: Any) -> str:
    """Encode one event as ``event: <type>\\ndata: <json>\\n\\n``."""
    name = event.value if isinstance(event, EventType) else str(event)
    return f"event: {name}\ndata: {json.dumps(payload, default=str)}\n\n"


def display_name(tool_name: str) -> str:
    """Human-friendly tool name (``mcp__srv__tool`` -> ``srv > tool``)."""
    return re.sub(r"^mcp__", "", tool_name).replace("__", " > ")
