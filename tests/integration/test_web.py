from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path

from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from switchboard.backends.session.memory import MemoryKeyValueStore
from switchboard.errors import ModelAPIError, RunTimeoutError
from switchboard.llm.model import ModelResponse
from switchboard.llm.sessions import SessionManager
from switchboard.metrics import AgentMetrics
from switchboard.services.query_service import build_query_service
from switchboard.settings import (
    AdvancedConfig,
    McpConfig,
    ModelConfig,
    SessionConfig,
    Settings,
    StreamingConfig,
)
from switchboard.streaming import ConnectionManager, SSETransport
from switchboard.web import QueryRequest, build_web_app, relay_frames, stream_query


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        project_root=tmp_path,
        model=ModelConfig(),
        mcp=McpConfig(gateway_url="http://gateway/mcp", browser_url="http://browser/mcp"),
        advanced=AdvancedConfig(),
        session=SessionConfig(),
        streaming=StreamingConfig(),
    )


def _events(reply: ModelResponse):
    yield {"type": "message_start", "message": {"usage": {"input_tokens": 7}}}
    for index, block in enumerate(reply.content):
        if block["type"] == "text":
            yield {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}}
            yield {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": block["text"]}}
        else:
            start = {"type": "tool_use", "id": block["id"], "name": block["name"], "input": {}}
            yield {"type": "content_block_start", "index": index, "content_block": start}
            yield {
                "type": "content_block_delta",
                "index": index,
                "delta": {"type": "input_json_delta", "partial_json": json.dumps(block["input"])},
            }
        yield {"type": "content_block_stop", "index": index}
    yield {"type": "message_delta", "delta": {"stop_reason": reply.stop_reason}, "usage": {"output_tokens": 3}}
    yield {"type": "message_stop"}


class FakeModel:
    """Plays back replies in order; an exception in the script is raised instead."""

    def __init__(self, *script):
        self.script = list(script)

    def _next(self) -> ModelResponse:
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def create_message(self, system, messages, tools):
        return self._next()

    async def stream_message(self, system, messages, tools):
        for event in _events(self._next()):
            yield event

    async def aclose(self):
        pass


class FakeMcp:
    async def list_tools(self, provider):
        if provider.name == "browser":
            raise ConnectionError("browser provider down")
        return [{"name": "search", "description": "Web search"}]

    async def call_tool(self, provider, name, arguments, timeout=None):
        return {"content": [{"type": "text", "text": f"found {arguments.get('q')}"}]}

    async def aclose(self):
        pass


class DownStore(MemoryKeyValueStore):
    async def ping(self) -> bool:
        return False


def _answer(text: str) -> ModelResponse:
    return ModelResponse(stop_reason="end_turn", content=[{"type": "text", "text": text}], usage={})


def _tool_turn() -> ModelResponse:
    return ModelResponse(
        stop_reason="tool_use",
        content=[{"type": "tool_use", "id": "t1", "name": "search", "input": {"q": "httpx"}}],
        usage={},
    )


def _app(tmp_path: Path, *script, store=None, connections=None, registry=None):
    return build_web_app(
        _settings(tmp_path),
        session_manager=SessionManager(store or MemoryKeyValueStore()),
        model_client=FakeModel(*script),
        mcp_client=FakeMcp(),
        connections=connections,
        metrics=AgentMetrics(registry or CollectorRegistry()),
    )


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for chunk in body.split("\n\n"):
        if not chunk.strip() or chunk.startswith(":"):
            continue
        fields = dict(line.split(": ", 1) for line in chunk.splitlines())
        events.append((fields["event"], json.loads(fields["data"])))
    return events


def test_health_and_ready(tmp_path: Path):
    with TestClient(_app(tmp_path)) as client:
        health = client.get("/health")
        ready = client.get("/ready")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["mcp"] == {"configured": True}
    assert ready.status_code == 200
    assert ready.json() == {"ready": True, "session_store_ok": True}


def test_ready_returns_503_when_session_store_is_down(tmp_path: Path):
    with TestClient(_app(tmp_path, store=DownStore())) as client:
        response = client.get("/ready")

    assert response.status_code == 503
    assert response.json()["ready"] is False


def test_query_runs_tools_and_returns_result(tmp_path: Path):
    with TestClient(_app(tmp_path, _tool_turn(), _answer("httpx 0.28 dropped proxies="))) as client:
        response = client.post("/query", json={"prompt": "What changed?", "sessionId": "s1"})
        session = client.get("/sessions/s1")

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["result"] == "httpx 0.28 dropped proxies="
    assert payload["sessionId"] == "s1"
    assert payload["outcome"] == "completed"
    assert payload["metadata"]["toolsUsed"] == ["search"]
    assert payload["metadata"]["iterations"] == 2

    data = session.json()["data"]
    assert [m["role"] for m in data["history"]] == ["user", "assistant"]
    assert data["metadata"]["toolsUsed"] == ["search"]


def test_query_validation_errors(tmp_path: Path):
    with TestClient(_app(tmp_path)) as client:
        missing = client.post("/query", json={"sessionId": "s1"})
        empty = client.post("/query/stream", json={"prompt": ""})
        bad_agent = client.post("/query", json={"prompt": "hi", "agent": "chess"})

    assert missing.status_code == 400
    assert missing.json() == {"success": False, "error": "Missing required field: prompt"}
    assert empty.status_code == 400
    assert bad_agent.status_code == 400
    assert "Unknown agent" in bad_agent.json()["error"]


def test_query_maps_run_errors_to_status_codes(tmp_path: Path):
    script = (RunTimeoutError(120), ModelAPIError(529, {"type": "overloaded_error"}))
    with TestClient(_app(tmp_path, *script)) as client:
        timeout = client.post("/query", json={"prompt": "slow"})
        upstream = client.post("/query", json={"prompt": "busy"})
        catalog = client.post("/query", json={"prompt": "open it", "agent": "browser"})

    assert timeout.status_code == 408
    assert timeout.json()["type"] == "timeout"
    assert "120s" in timeout.json()["error"]
    assert upstream.status_code == 502
    assert upstream.json()["status"] == 529
    assert catalog.status_code == 503
    assert catalog.json()["provider"] == "browser"


def test_stream_emits_events_in_order(tmp_path: Path):
    with TestClient(_app(tmp_path, _tool_turn(), _answer("Done."))) as client:
        response = client.post("/query/stream", json={"prompt": "look it up", "sessionId": "s1"})
        stats = client.get("/sse/stats")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache, no-transform"

    events = _parse_sse(response.text)
    names = [name for name, _ in events]
    assert names[0] == "metadata"
    assert events[0][1]["sessionId"] == "s1"
    assert events[0][1]["agentType"] == "research"
    assert names[-1] == "done"
    assert names.index("tool_use") < names.index("tool_result") < names.index("result")
    assert "stream_chunk" in names

    payloads = dict(events)
    assert payloads["tool_use"]["tool"] == "search"
    assert payloads["tool_result"]["result"] == "found httpx"
    assert payloads["result"]["text"] == "Done."
    assert payloads["done"]["success"] is True
    assert payloads["done"]["toolsUsed"] == ["search"]
    progress = [p["message"] for n, p in events if n == "progress"]
    assert progress[0] == "[AGENT:RESEARCH] Starting research agent"

    assert stats.json()["data"]["activeConnections"] == 0


def test_stream_reports_errors_as_events(tmp_path: Path):
    with TestClient(_app(tmp_path, ModelAPIError(500, "boom"))) as client:
        response = client.post("/query/stream", json={"prompt": "hi"})

    events = _parse_sse(response.text)
    assert events[0][0] == "metadata"
    assert events[-1][0] == "error"
    assert "500" in events[-1][1]["message"]


def test_stream_rejects_when_at_capacity(tmp_path: Path):
    with TestClient(_app(tmp_path, connections=ConnectionManager(max_connections=0))) as client:
        response = client.post("/query/stream", json={"prompt": "hi"})

    assert response.status_code == 503
    assert response.json()["type"] == "capacity"
    assert response.json()["error"] == "Server busy, please try again later"


def test_session_routes(tmp_path: Path):
    with TestClient(_app(tmp_path, _answer("one"))) as client:
        client.post("/query", json={"prompt": "hi", "sessionId": "s1"})
        listing = client.get("/sessions")
        missing = client.get("/sessions/nope")
        deleted = client.delete("/sessions/s1")
        after = client.get("/sessions/s1")

    stats = listing.json()["data"]
    assert stats["activeSessions"] == 1
    assert stats["totalMessages"] == 2
    assert stats["sessions"][0]["id"] == "s1"
    assert missing.status_code == 404
    assert deleted.json() == {"success": True, "sessionId": "s1"}
    assert after.status_code == 404


def test_metrics_endpoint_exposes_run_metrics(tmp_path: Path):
    registry = CollectorRegistry()
    with TestClient(_app(tmp_path, _answer("ok"), registry=registry)) as client:
        client.post("/query", json={"prompt": "hi"})
        response = client.get("/metrics")

    assert response.status_code == 200
    assert "switchboard_agent_query_duration_seconds" in response.text
    assert registry.get_sample_value(
        "switchboard_agent_query_duration_seconds_count", {"agent": "research", "outcome": "completed"}
    ) == 1


class GatedModel(FakeModel):
    """Streams its reply only once ``gate`` is set."""

    def __init__(self, gate: asyncio.Event, *script):
        super().__init__(*script)
        self.gate = gate

    async def stream_message(self, system, messages, tools):
        await self.gate.wait()
        for event in _events(self._next()):
            yield event


def test_client_disconnect_releases_connection_but_run_still_saves_answer(tmp_path: Path):
    async def scenario():
        gate = asyncio.Event()
        sessions = SessionManager(MemoryKeyValueStore())
        service = build_query_service(
            _settings(tmp_path),
            session_manager=sessions,
            model_client=GatedModel(gate, _answer("late answer")),
            mcp_client=FakeMcp(),
        )
        connections = ConnectionManager(keep_alive_interval=60)
        transport = SSETransport()
        assert connections.add("s1", transport)
        keep_alive = connections._connections["s1"].keep_alive

        run = asyncio.create_task(
            stream_query(service, connections, transport, "s1", QueryRequest(prompt="hi"))
        )
        body = relay_frames(connections, "s1", transport)
        first = await anext(body)
        # The server closes the response body when the client goes away.
        await body.aclose()
        active = connections.active_count
        with contextlib.suppress(asyncio.CancelledError):
            await keep_alive

        gate.set()
        await run
        return first, active, keep_alive, transport, await sessions.get_history("s1")

    first, active, keep_alive, transport, history = asyncio.run(scenario())

    assert first.startswith("event: metadata\n")
    assert active == 0
    assert keep_alive.cancelled()
    assert transport.closed is True
    assert history[-1] == {"role": "assistant", "content": "late answer"}
