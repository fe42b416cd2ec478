"""switchboard - LLM tool-use agent over remote MCP tool providers.

File guide
----------
settings.py              Configuration (switchboard.yaml, env vars, paths)
errors.py                Error taxonomy (model, tool, timeout, session, capacity)
prompt.py                Agent profiles: system prompts, providers, run deadlines
session.py               Session backing-store protocol + factory (memory/redis)
llm/mcp_client.py        JSON-RPC client for MCP providers over HTTP
llm/catalog.py           Tool catalog merged across providers
llm/model.py             Messages API client (blocking + streamed)
llm/timeout.py           Sliding per-item deadline for async streams
llm/loop.py              Agent loop (stop-reason state machine, tool fan-out)
llm/sessions.py          Session records and SessionManager (TTL, bounded history)
streaming/events.py      SSE event names and frame encoding
streaming/connections.py SSE transports and the ConnectionManager
services/query_service.py  Session -> catalog -> loop -> persist
web.py                   FastAPI app (query, stream, sessions, metrics)
metrics.py               Prometheus metrics
cli.py                   Typer CLI (serve, query, tools, sessions, config)

Entry points (app/ - thin wrappers, not part of the library)
-------------------------------------------------------------
app/web.py               HTTP API for uvicorn

Public API
----------
- ``AgentLoop``     - runs one prompt against a tool catalog
- ``QueryService``  - adds session continuity and run deadlines
- ``build_web_app`` - FastAPI app with every route registered
"""

from switchboard.llm.loop import AgentLoop
from switchboard.services.query_service import QueryService


def build_web_app(*args, **kwargs):  # noqa: D103
    from switchboard.web import build_web_app as _build
    return _build(*args, **kwargs)


__all__ = ["AgentLoop", "QueryService", "build_web_app"]
