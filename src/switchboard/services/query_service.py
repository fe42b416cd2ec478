"""Shared query execution service used by the HTTP and CLI adapters."""
from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any

from switchboard.errors import CatalogUnavailableError, ModelAPIError, RunTimeoutError
from switchboard.llm.catalog import ToolCatalog
from switchboard.llm.loop import AgentLoop, ProgressCallbacks, RunResult
from switchboard.llm.mcp_client import McpClient
from switchboard.llm.model import ModelClient
from switchboard.llm.sessions import SessionManager
from switchboard.metrics import AgentMetrics
from switchboard.prompt import AgentProfile, build_profile
from switchboard.session import create_session_store
from switchboard.settings import Settings

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_session_id() -> str:
    """``session-<epoch ms>-<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"session-{int(time.time() * 1000)}-{suffix}"


@dataclass
class PreparedQuery:
    """Session state captured before the run starts."""

    session_id: str
    prompt: str
    profile: AgentProfile
    history: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class QueryServiceResult:
    """Normalized result of one agent run."""

    text: str
    session_id: str
    outcome: str
    iterations: int
    tools_used: list[str]
    usage: dict[str, int]
    elapsed_ms: int
    history_length: int
    agent: str

    def metadata(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "iterations": self.iterations,
            "toolsUsed": self.tools_used,
            "usage": self.usage,
            "elapsed_ms": self.elapsed_ms,
            "historyLength": self.history_length,
        }


class QueryService:
    """Runs one prompt against an agent profile with session continuity."""

    def __init__(
        self,
        settings: Settings,
        sessions: SessionManager,
        loop: AgentLoop,
        mcp_client: McpClient,
        metrics: AgentMetrics | None = None,
    ):
        self.settings = settings
        self.sessions = sessions
        self.loop = loop
        self.mcp_client = mcp_client
        self.metrics = metrics

    def profile(self, agent: str | None) -> AgentProfile:
        return build_profile(agent or "research", self.settings)

    async def load_catalog(self, profile: AgentProfile) -> ToolCatalog:
        return await ToolCatalog.load(self.mcp_client, profile.providers)

    async def prepare(
        self,
        prompt: str,
        session_id: str | None = None,
        context: dict[str, Any] | None = None,
        agent: str | None = None,
    ) -> PreparedQuery:
        """Merge context, read history, and record the user prompt."""
        profile = self.profile(agent)
        session_id = session_id or new_session_id()
        if context:
            await self.sessions.update_context(session_id, context)
        history = list(await self.sessions.get_history(session_id))
        session_context = dict(await self.sessions.get_context(session_id))
        await self.sessions.add_message(session_id, "user", prompt)
        logger.info("Query for session %s (%s agent): %.100s", session_id, profile.name, prompt)
        return PreparedQuery(
            session_id=session_id,
            prompt=prompt,
            profile=profile,
            history=history,
            context=session_context,
        )

    async def execute(
        self,
        prepared: PreparedQuery,
        callbacks: ProgressCallbacks | None = None,
    ) -> QueryServiceResult:
        """Run the agent under the profile deadline and persist the answer.

        Raises:
            RunTimeoutError: The run exceeded the profile deadline.
            ModelAPIError: The model service rejected a turn.
            CatalogUnavailableError: A required tool provider is down.
        """
        profile = prepared.profile
        outcome = "error"
        try:
            result = await self._run_with_deadline(prepared, callbacks)
            outcome = result.outcome.value
        except RunTimeoutError:
            self._count_error("timeout")
            raise
        except ModelAPIError:
            self._count_error("model_api")
            raise
        except CatalogUnavailableError:
            self._count_error("catalog_unavailable")
            raise
        except Exception:
            self._count_error("internal")
            raise
        finally:
            if self.metrics is not None:
                self.metrics.query_duration_seconds.labels(agent=profile.name, outcome=outcome).observe(
                    time.monotonic() - prepared.started
                )

        await self.sessions.add_message(prepared.session_id, "assistant", result.text)
        await self.sessions.update_metadata(
            prepared.session_id, usage=result.usage, tools_used=result.tools_used
        )

        elapsed_ms = int((time.monotonic() - prepared.started) * 1000)
        logger.info(
            "Session %s completed in %dms (%s, %d iterations, %d tools)",
            prepared.session_id,
            elapsed_ms,
            outcome,
            result.iterations,
            len(result.tools_used),
        )
        return QueryServiceResult(
            text=result.text,
            session_id=prepared.session_id,
            outcome=outcome,
            iterations=result.iterations,
            tools_used=result.tools_used,
            usage=dict(result.usage),
            elapsed_ms=elapsed_ms,
            history_length=len(prepared.history) + 2,
            agent=profile.name,
        )

    async def run(
        self,
        prompt: str,
        session_id: str | None = None,
        context: dict[str, Any] | None = None,
        agent: str | None = None,
        callbacks: ProgressCallbacks | None = None,
    ) -> QueryServiceResult:
        prepared = await self.prepare(prompt, session_id=session_id, context=context, agent=agent)
        return await self.execute(prepared, callbacks=callbacks)

    async def _run_with_deadline(
        self,
        prepared: PreparedQuery,
        callbacks: ProgressCallbacks | None,
    ) -> RunResult:
        profile = prepared.profile
        try:
            async with asyncio.timeout(profile.run_timeout):
                catalog = await self.load_catalog(profile)
                if callbacks is not None:
                    callbacks.emit("on_progress", f"Loaded {len(catalog)} tools")
                return await self.loop.run(
                    prepared.prompt,
                    prepared.history,
                    profile.system_prompt,
                    catalog,
                    context=prepared.context,
                    callbacks=callbacks,
                )
        except RunTimeoutError:
            raise
        except TimeoutError as e:
            logger.error("Run for session %s exceeded %ss", prepared.session_id, profile.run_timeout)
            raise RunTimeoutError(profile.run_timeout) from e

    def _count_error(self, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.errors_total.labels(type=kind).inc()

    async def aclose(self) -> None:
        await self.loop.model.aclose()
        await self.mcp_client.aclose()
        await self.sessions.aclose()


def build_query_service(
    settings: Settings,
    *,
    session_manager: SessionManager | None = None,
    model_client: ModelClient | None = None,
    mcp_client: McpClient | None = None,
    metrics: AgentMetrics | None = None,
) -> QueryService:
    """Wire a ``QueryService`` from settings; any backing resource can be injected."""
    s = settings
    if session_manager is None:
        session_manager = SessionManager(
            create_session_store(),
            ttl=s.session.ttl,
            max_history=s.session.max_history,
            key_prefix=s.session.key_prefix,
        )
    if model_client is None:
        if not s.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY not set; model calls will be rejected")
        model_client = ModelClient(
            api_key=s.anthropic_api_key or "",
            model=s.model.model,
            max_tokens=s.model.max_tokens,
            base_url=s.model.base_url,
            api_version=s.model.api_version,
            prompt_caching=s.model.prompt_caching,
            timeout=float(s.model.request_timeout_seconds),
        )
    if mcp_client is None:
        mcp_client = McpClient(
            list_timeout=float(s.mcp.list_timeout_seconds),
            call_timeout=float(s.mcp.call_timeout_seconds),
        )
    loop = AgentLoop(
        model_client,
        mcp_client,
        max_iterations=s.advanced.max_iterations,
        history_window=s.advanced.history_window,
        tool_timeout=float(s.mcp.call_timeout_seconds),
        stream_idle_timeout=float(s.advanced.stream_idle_timeout_seconds),
        metrics=metrics,
    )
    return QueryService(s, session_manager, loop, mcp_client, metrics=metrics)
