from __future__ import annotations

import asyncio
import re
from dataclasses import replace
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from switchboard.backends.session.memory import MemoryKeyValueStore
from switchboard.errors import CatalogUnavailableError, ModelAPIError, RunTimeoutError
from switchboard.llm.loop import CONTEXT_HEADER, AgentLoop
from switchboard.llm.model import ModelResponse
from switchboard.llm.sessions import SessionManager
from switchboard.metrics import AgentMetrics
from switchboard.prompt import build_profile
from switchboard.services.query_service import QueryService, new_session_id
from switchboard.settings import (
    AdvancedConfig,
    McpConfig,
    ModelConfig,
    SessionConfig,
    Settings,
    StreamingConfig,
)


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        project_root=tmp_path,
        model=ModelConfig(),
        mcp=McpConfig(browser_url="http://browser/mcp"),
        advanced=AdvancedConfig(),
        session=SessionConfig(),
        streaming=StreamingConfig(),
    )


class EchoModel:
    """Answers every turn with a fixed text, or misbehaves on request."""

    def __init__(self, text: str = "answer", delay: float = 0.0, error: Exception | None = None):
        self.text = text
        self.delay = delay
        self.error = error
        self.calls: list[list[dict]] = []
        self.closed = False

    async def create_message(self, system, messages, tools):
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ModelResponse(
            stop_reason="end_turn",
            content=[{"type": "text", "text": self.text}],
            usage={"input_tokens": 10, "output_tokens": 4},
        )

    async def aclose(self):
        self.closed = True


class DownMcp:
    def __init__(self):
        self.closed = False

    async def list_tools(self, provider):
        raise ConnectionError(f"{provider.name} down")

    async def call_tool(self, provider, name, arguments, timeout=None):
        raise AssertionError("no tools expected")

    async def aclose(self):
        self.closed = True


def _service(tmp_path: Path, model: EchoModel, registry: CollectorRegistry | None = None):
    metrics = AgentMetrics(registry or CollectorRegistry())
    sessions = SessionManager(MemoryKeyValueStore(), max_history=20)
    mcp = DownMcp()
    loop = AgentLoop(model, mcp, metrics=metrics)
    return QueryService(_settings(tmp_path), sessions, loop, mcp, metrics=metrics), sessions, mcp


def test_new_session_id_format():
    assert re.fullmatch(r"session-\d{13}-[0-9a-z]{9}", new_session_id())
    assert new_session_id() != new_session_id()


def test_run_persists_exchange_and_feeds_history_back(tmp_path: Path):
    model = EchoModel("first answer")
    service, sessions, _ = _service(tmp_path, model)

    async def scenario():
        first = await service.run("hello", session_id="s1", context={"project": "demo"})
        second = await service.run("again", session_id="s1")
        return first, second, await sessions.get("s1")

    first, second, session = asyncio.run(scenario())

    assert first.text == "first answer"
    assert first.session_id == "s1"
    assert first.outcome == "completed"
    assert first.agent == "research"
    assert first.history_length == 2
    assert second.history_length == 4
    assert [m["role"] for m in session.history] == ["user", "assistant", "user", "assistant"]
    assert session.context == {"project": "demo"}
    assert session.metadata.token_counters.input_tokens == 20

    first_messages, second_messages = model.calls
    assert first_messages[0]["content"].startswith(CONTEXT_HEADER)
    assert {"role": "assistant", "content": "first answer"} in second_messages
    assert second_messages[-1] == {"role": "user", "content": "again"}


def test_run_without_session_id_generates_one(tmp_path: Path):
    service, _, _ = _service(tmp_path, EchoModel())

    result = asyncio.run(service.run("hi"))

    assert result.session_id.startswith("session-")
    assert result.metadata()["historyLength"] == 2


def test_deadline_raises_run_timeout_and_counts_error(tmp_path: Path):
    registry = CollectorRegistry()
    model = EchoModel(delay=5)
    service, sessions, _ = _service(tmp_path, model, registry)
    settings = service.settings
    service.profile = lambda agent: replace(build_profile(agent or "research", settings), run_timeout=0.05)

    with pytest.raises(RunTimeoutError, match="timed out after 0.05s"):
        asyncio.run(service.run("slow", session_id="s1"))

    assert registry.get_sample_value("switchboard_agent_errors_total", {"type": "timeout"}) == 1
    history = asyncio.run(sessions.get_history("s1"))
    assert [m["role"] for m in history] == ["user"]


def test_model_api_error_propagates(tmp_path: Path):
    registry = CollectorRegistry()
    service, _, _ = _service(tmp_path, EchoModel(error=ModelAPIError(529, {"type": "overloaded"})), registry)

    with pytest.raises(ModelAPIError):
        asyncio.run(service.run("q", session_id="s1"))

    assert registry.get_sample_value("switchboard_agent_errors_total", {"type": "model_api"}) == 1


def test_browser_agent_fails_when_its_provider_is_down(tmp_path: Path):
    registry = CollectorRegistry()
    model = EchoModel()
    service, _, _ = _service(tmp_path, model, registry)

    with pytest.raises(CatalogUnavailableError, match="browser"):
        asyncio.run(service.run("open example.com", agent="browser"))

    assert model.calls == []
    assert (
        registry.get_sample_value("switchboard_agent_errors_total", {"type": "catalog_unavailable"}) == 1
    )


def test_unknown_agent_is_rejected_before_touching_the_session(tmp_path: Path):
    service, sessions, _ = _service(tmp_path, EchoModel())

    with pytest.raises(ValueError):
        asyncio.run(service.run("q", session_id="s1", agent="nope"))

    assert asyncio.run(sessions.list()) == []


def test_aclose_closes_clients(tmp_path: Path):
    model = EchoModel()
    service, _, mcp = _service(tmp_path, model)

    asyncio.run(service.aclose())

    assert model.closed is True
    assert mcp.closed is True
