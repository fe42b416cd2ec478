"""Error taxonomy for switchboard.

Run-level errors (``ModelAPIError``, ``RunTimeoutError``,
``CatalogUnavailableError``) reach the caller. ``ToolDispatchError`` is turned
into an error ``tool_result`` by the agent loop and ``SessionStoreError`` is
absorbed by the session manager's in-memory fallback.
"""
from __future__ import annotations

from typing import Any

from pydantic_ai.exceptions import ModelHTTPError


class SwitchboardError(Exception):
    """Base class for switchboard errors."""


class ModelAPIError(ModelHTTPError):
    """The model service answered with a non-success status."""

    def __init__(self, status_code: int, body: Any = None, model_name: str = "anthropic"):
        super().__init__(status_code=status_code, model_name=model_name, body=body)

    def __str__(self) -> str:
        return f"Model API returned {self.status_code}: {self.body}"


class ToolDispatchError(SwitchboardError):
    """A single tool call failed (transport, JSON-RPC error, or timeout)."""

    def __init__(self, tool: str, message: str):
        super().__init__(message)
        self.tool = tool
        self.message = message


class RunTimeoutError(SwitchboardError, TimeoutError):
    """The whole agent run exceeded its deadline."""

    def __init__(self, timeout: float, message: str | None = None):
        super().__init__(message or f"Operation timed out after {timeout:g}s")
        self.timeout = timeout


class SessionStoreError(SwitchboardError):
    """The session backing store is unreachable or returned garbage."""


class CapacityExceededError(SwitchboardError):
    """The progress channel connection cap is reached."""


class CatalogUnavailableError(SwitchboardError):
    """A required tool provider could not list its tools."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Tool provider '{provider}' unavailable: {reason}")
        self.provider = provider
        self.reason = reason
