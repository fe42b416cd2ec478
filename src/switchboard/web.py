"""HTTP API for switchboard.

``build_web_app()`` wires the process-scoped services (session manager,
connection manager, model and MCP clients, metrics) and returns a FastAPI app.
Every backing resource can be injected, which is how the tests run it without
a network.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry
from pydantic import BaseModel, ConfigDict, Field

from switchboard.errors import (
    CapacityExceededError,
    CatalogUnavailableError,
    ModelAPIError,
    RunTimeoutError,
)
from switchboard.llm.loop import ProgressCallbacks
from switchboard.llm.mcp_client import McpClient
from switchboard.llm.model import ModelClient
from switchboard.llm.sessions import SessionManager
from switchboard.metrics import AgentMetrics
from switchboard.observability import configure_observability
from switchboard.services.query_service import QueryService, build_query_service, new_session_id
from switchboard.settings import Settings, load_settings
from switchboard.streaming import ConnectionManager, EventType, SSETransport
from switchboard.streaming.events import SSE_HEADERS, display_name

logger = logging.getLogger(__name__)


class QueryRequest(BaseModel):
    """Body of ``POST /query`` and ``POST /query/stream``."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    context: dict[str, Any] | None = None
    agent: str | None = None


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


def _run_error_response(exc: Exception) -> JSONResponse:
    """Map a run-level error to its HTTP status."""
    if isinstance(exc, RunTimeoutError):
        return _error(408, str(exc), type="timeout")
    if isinstance(exc, ModelAPIError):
        return _error(502, str(exc), type="model_api", status=exc.status_code)
    if isinstance(exc, CatalogUnavailableError):
        return _error(503, str(exc), type="catalog_unavailable", provider=exc.provider)
    if isinstance(exc, CapacityExceededError):
        return _error(503, str(exc), type="capacity")
    return _error(500, str(exc) or type(exc).__name__, type="internal")


def sse_callbacks(
    connections: ConnectionManager, session_id: str, transport: SSETransport | None = None
) -> ProgressCallbacks:
    """Progress callbacks that forward agent activity as SSE events.

    With ``transport``, events stop as soon as that transport loses the slot.
    """

    def elapsed() -> int:
        return connections.elapsed_ms(session_id)

    def progress(message: str) -> None:
        connections.send_progress(session_id, message, transport)

    def event(kind: EventType, payload: dict[str, Any]) -> None:
        connections.send_event(session_id, kind, payload, transport)

    def on_tool_use(name: str, tool_input: Any) -> None:
        shown = display_name(name)
        progress(f"Using tool: {shown}")
        event(
            EventType.TOOL_USE,
            {"tool": name, "displayName": shown, "input": tool_input, "timestamp": elapsed()},
        )

    def on_tool_result(name: str, result: Any, error: str | None) -> None:
        shown = display_name(name)
        if error:
            progress(f"Tool error: {shown}")
        else:
            progress(f"Tool completed: {shown}")
        event(
            EventType.TOOL_RESULT,
            {
                "tool": name,
                "displayName": shown,
                "result": None if error else result,
                "error": error,
                "timestamp": elapsed(),
            },
        )

    def on_thinking(text: str) -> None:
        event(EventType.THINKING, {"text": text, "timestamp": elapsed()})

    def on_stream_chunk(chunk: str) -> None:
        event(EventType.STREAM_CHUNK, {"chunk": chunk, "timestamp": elapsed()})

    def on_cache_hit(tokens: int) -> None:
        # Cached input tokens are billed at roughly a tenth of the normal rate.
        savings = round(tokens * 0.9)
        progress(f"Cache hit: {tokens} tokens (saved {savings} tokens)")
        event(
            EventType.CACHE_HIT,
            {"tokens": tokens, "savings": f"{savings} tokens (90% reduction)", "timestamp": elapsed()},
        )

    return ProgressCallbacks(
        on_progress=progress,
        on_tool_use=on_tool_use,
        on_tool_result=on_tool_result,
        on_thinking=on_thinking,
        on_stream_chunk=on_stream_chunk,
        on_cache_hit=on_cache_hit,
    )


async def stream_query(
    service: QueryService,
    connections: ConnectionManager,
    transport: SSETransport,
    session_id: str,
    body: QueryRequest,
) -> None:
    """Run one streamed query and report it on ``transport``.

    Keeps running if the client goes away or the session is taken over by a
    newer stream; its events are then dropped.
    """
    try:
        prepared = await service.prepare(
            body.prompt or "", session_id=session_id, context=body.context, agent=body.agent
        )
        connections.send_event(
            session_id,
            EventType.METADATA,
            {
                "sessionId": session_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "historyLength": len(prepared.history),
                "agentType": prepared.profile.name,
            },
            transport,
        )
        connections.send_progress(session_id, f"Starting {prepared.profile.name} agent", transport)

        callbacks = sse_callbacks(connections, session_id, transport)
        result = await service.execute(prepared, callbacks=callbacks)

        connections.send_event(
            session_id,
            EventType.RESULT,
            {"text": result.text, "sessionId": session_id, "elapsed_ms": result.elapsed_ms},
            transport,
        )
        connections.send_progress(
            session_id, f"Completed in {result.elapsed_ms / 1000:.1f}s", transport
        )
        connections.send_event(
            session_id,
            EventType.DONE,
            {
                "success": True,
                "outcome": result.outcome,
                "elapsed_ms": result.elapsed_ms,
                "historyLength": result.history_length,
                "toolsUsed": list(dict.fromkeys(connections.tools_used(session_id))),
            },
            transport,
        )
    except asyncio.CancelledError:
        raise
    except Exception as e:
        if isinstance(e, (RunTimeoutError, ModelAPIError, CatalogUnavailableError)):
            logger.error("Streamed query for %s failed: %s", session_id, e)
        else:
            logger.exception("Streamed query for %s failed", session_id)
        elapsed = connections.elapsed_ms(session_id)
        connections.send_progress(session_id, f"Error: {e}", transport)
        payload: dict[str, Any] = {"message": str(e), "elapsed_ms": elapsed}
        if isinstance(e, RunTimeoutError):
            payload["type"] = "timeout"
        connections.send_event(session_id, EventType.ERROR, payload, transport)
    finally:
        connections.close(session_id, transport)


async def relay_frames(
    connections: ConnectionManager, session_id: str, transport: SSETransport
) -> AsyncIterator[str]:
    """Response body of a stream. Releases the connection when it ends."""
    try:
        async for frame in transport.frames():
            yield frame
    finally:
        # Client gone or run finished: release only our own slot.
        connections.close(session_id, transport)


def build_web_app(
    settings: Settings | None = None,
    *,
    session_manager: SessionManager | None = None,
    model_client: ModelClient | None = None,
    mcp_client: McpClient | None = None,
    connections: ConnectionManager | None = None,
    metrics: AgentMetrics | None = None,
) -> FastAPI:
    """Return the FastAPI app with every route registered."""
    s = settings or load_settings()
    metrics = metrics or AgentMetrics(CollectorRegistry())
    service = build_query_service(
        s,
        session_manager=session_manager,
        model_client=model_client,
        mcp_client=mcp_client,
        metrics=metrics,
    )
    session_manager = service.sessions
    if connections is None:
        connections = ConnectionManager(
            max_connections=s.streaming.max_connections,
            keep_alive_interval=float(s.streaming.keep_alive_seconds),
            metrics=metrics,
        )
    background: set[asyncio.Task[None]] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_observability()
        logger.info(
            "switchboard ready (model %s, gateway %s)",
            s.model.model,
            "configured" if s.mcp.gateway_url else "not configured",
        )
        try:
            yield
        finally:
            await connections.close_all()
            for task in list(background):
                task.cancel()
            if background:
                await asyncio.gather(*background, return_exceptions=True)
            await service.aclose()
            logger.info("switchboard stopped")

    app = FastAPI(title="switchboard", lifespan=lifespan)
    app.state.settings = s
    app.state.service = service
    app.state.sessions = session_manager
    app.state.connections = connections
    app.state.metrics = metrics

    router = APIRouter()

    @router.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "agent": "research",
            "mcp": {"configured": bool(s.mcp.gateway_url)},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.get("/ready")
    async def ready():
        store_ok = await session_manager.health_check()
        payload = {"ready": store_ok, "session_store_ok": store_ok}
        return JSONResponse(payload, status_code=200 if store_ok else 503)

    @router.post("/query")
    async def query(body: QueryRequest):
        if not body.prompt:
            return _error(400, "Missing required field: prompt")
        try:
            service.profile(body.agent)
        except ValueError as e:
            return _error(400, str(e))

        try:
            result = await service.run(
                body.prompt, session_id=body.session_id, context=body.context, agent=body.agent
            )
        except (RunTimeoutError, ModelAPIError, CatalogUnavailableError) as e:
            logger.error("Query failed: %s", e)
            return _run_error_response(e)
        except Exception as e:
            logger.exception("Query failed")
            return _run_error_response(e)

        return {
            "success": True,
            "result": result.text,
            "sessionId": result.session_id,
            "outcome": result.outcome,
            "metadata": result.metadata(),
        }

    @router.post("/query/stream")
    async def query_stream(body: QueryRequest):
        if not body.prompt:
            return _error(400, "Missing required field: prompt")
        try:
            profile = service.profile(body.agent)
        except ValueError as e:
            return _error(400, str(e))

        session_id = body.session_id or new_session_id()
        transport = SSETransport(backlog_limit=s.streaming.keep_alive_backlog)
        if not connections.add(session_id, transport, label=profile.label):
            return _run_error_response(CapacityExceededError("Server busy, please try again later"))

        task = asyncio.create_task(stream_query(service, connections, transport, session_id, body))
        background.add(task)
        task.add_done_callback(background.discard)

        return StreamingResponse(
            relay_frames(connections, session_id, transport),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @router.get("/sse/stats")
    async def sse_stats() -> dict[str, Any]:
        return {"success": True, "data": connections.stats()}

    @router.get("/sessions")
    async def sessions_stats() -> dict[str, Any]:
        return {"success": True, "data": await session_manager.stats()}

    @router.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        session = await session_manager.get(session_id)
        if session is None:
            return _error(404, f"Session not found: {session_id}")
        return {"success": True, "data": session.to_dict()}

    @router.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, Any]:
        await session_manager.clear(session_id)
        return {"success": True, "sessionId": session_id}

    @router.get("/metrics")
    async def prometheus_metrics() -> Response:
        return Response(metrics.render(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router)
    return app
