"""LLM orchestration: tool catalog, model client, agent loop and sessions."""

from __future__ import annotations

from switchboard.llm.catalog import ToolCatalog, ToolDescriptor
from switchboard.llm.loop import AgentLoop, Outcome, ProgressCallbacks, RunResult
from switchboard.llm.mcp_client import McpClient, ToolProvider
from switchboard.llm.model import ModelClient, ModelResponse, StopReason
from switchboard.llm.results import is_tool_error, tool_error, tool_result
from switchboard.llm.sessions import Session, SessionManager
from switchboard.llm.timeout import with_timeout

__all__ = [
    "AgentLoop",
    "McpClient",
    "ModelClient",
    "ModelResponse",
    "Outcome",
    "ProgressCallbacks",
    "RunResult",
    "Session",
    "SessionManager",
    "StopReason",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolProvider",
    "is_tool_error",
    "tool_error",
    "tool_result",
    "with_timeout",
]
