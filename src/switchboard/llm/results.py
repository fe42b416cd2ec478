"""Shared helpers for tool_result blocks."""
from __future__ import annotations

from typing import Any


def tool_result(tool_use_id: str, content: str) -> dict[str, Any]:
    """Build a successful tool_result block."""
    return {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}


def tool_error(tool_use_id: str, error: str) -> dict[str, Any]:
    """Build an error tool_result block the model can read and adapt to."""
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "is_error": True,
        "content": f"Tool error: {error}",
    }


def is_tool_error(block: Any) -> bool:
    """Return True when a block is an error tool_result."""
    return (
        isinstance(block, dict)
        and block.get("type") == "tool_result"
        and block.get("is_error") is True
    )
