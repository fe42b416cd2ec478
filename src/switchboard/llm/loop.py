"""Tool-use agent loop.

One run drives a multi-turn conversation with the model:

    AWAITING_MODEL -> MODEL_RESPONDED -> DISPATCHING_TOOLS -> AWAITING_MODEL
                                      -> DONE | TRUNCATED | ABORTED

Every ``tool_use`` block of a turn is dispatched concurrently to the provider
that declared the tool; each call is isolated so a failing tool becomes an
error ``tool_result`` instead of failing the run. Results are appended in the
same order as the ``tool_use`` blocks.

With ``callbacks`` the model is called through the streamed API and progress
is reported at the same points of the state machine; control flow is
identical.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from switchboard.errors import RunTimeoutError, ToolDispatchError
from switchboard.llm.catalog import ToolCatalog
from switchboard.llm.mcp_client import McpClient, format_tool_content
from switchboard.llm.model import USAGE_KEYS, MessageAccumulator, ModelClient, ModelResponse, StopReason
from switchboard.llm.results import is_tool_error, tool_error, tool_result
from switchboard.llm.timeout import with_timeout
from switchboard.metrics import AgentMetrics
from switchboard.observability import record_model_usage

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "\n\n[Response truncated due to length - continue in next query]"
CONTEXT_HEADER = "[Context]"


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    MODEL_RESPONDED = "model_responded"
    DISPATCHING_TOOLS = "dispatching_tools"
    DONE = "done"
    TRUNCATED = "truncated"
    ABORTED = "aborted"


# Anything not listed aborts the loop.
TRANSITIONS: dict[StopReason, LoopState] = {
    StopReason.END_TURN: LoopState.DONE,
    StopReason.TOOL_USE: LoopState.DISPATCHING_TOOLS,
    StopReason.MAX_TOKENS: LoopState.TRUNCATED,
}


def next_state(reason: StopReason) -> LoopState:
    return TRANSITIONS.get(reason, LoopState.ABORTED)


class Outcome(str, Enum):
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"


@dataclass
class ToolCallRecord:
    id: str
    name: str
    provider: str | None
    error: str | None = None
    latency_s: float = 0.0


@dataclass
class RunResult:
    text: str
    outcome: Outcome
    iterations: int
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=lambda: {k: 0 for k in USAGE_KEYS})

    @property
    def tools_used(self) -> list[str]:
        """Distinct tool names in first-use order."""
        seen: list[str] = []
        for call in self.tool_calls:
            if call.name not in seen:
                seen.append(call.name)
        return seen


@dataclass
class ProgressCallbacks:
    """Optional hooks invoked while a run progresses."""

    on_progress: Callable[[str], None] | None = None
    on_tool_use: Callable[[str, Any], None] | None = None
    on_tool_result: Callable[[str, Any, str | None], None] | None = None
    on_thinking: Callable[[str], None] | None = None
    on_stream_chunk: Callable[[str], None] | None = None
    on_cache_hit: Callable[[int], None] | None = None

    def emit(self, hook: str, *args: Any) -> None:
        fn = getattr(self, hook)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception:
            logger.warning("Progress callback %s failed", hook, exc_info=True)


def build_messages(
    prompt: str,
    history: list[dict[str, Any]],
    context: dict[str, Any] | None = None,
    history_window: int = 10,
) -> list[dict[str, Any]]:
    """Context message (if any), then the recent history tail, then the prompt."""
    messages: list[dict[str, Any]] = []
    if context:
        lines = "\n".join(f"{key}: {json.dumps(value)}" for key, value in context.items())
        messages.append({"role": "user", "content": f"{CONTEXT_HEADER}\n{lines}"})
    if history_window > 0:
        messages.extend(history[-history_window:])
    messages.append({"role": "user", "content": prompt})
    return messages


class AgentLoop:
    """Drives the model/tool conversation for one request at a time."""

    def __init__(
        self,
        model: ModelClient,
        mcp_client: McpClient,
        max_iterations: int = 15,
        history_window: int = 10,
        tool_timeout: float = 60.0,
        stream_idle_timeout: float = 60.0,
        metrics: AgentMetrics | None = None,
    ):
        self._model = model
        self._mcp = mcp_client
        self.max_iterations = max_iterations
        self.history_window = history_window
        self.tool_timeout = tool_timeout
        self.stream_idle_timeout = stream_idle_timeout
        self._metrics = metrics

    @property
    def model(self) -> ModelClient:
        return self._model

    def max_iterations_message(self) -> str:
        return (
            f"Reached maximum iterations ({self.max_iterations}). "
            "The task may require breaking into smaller steps."
        )

    async def run(
        self,
        prompt: str,
        history: list[dict[str, Any]],
        system_prompt: str,
        catalog: ToolCatalog,
        context: dict[str, Any] | None = None,
        callbacks: ProgressCallbacks | None = None,
    ) -> RunResult:
        messages = build_messages(prompt, history, context, self.history_window)
        tools = catalog.to_model_tools()
        result = RunResult(text="", outcome=Outcome.MAX_ITERATIONS, iterations=0)
        hooks = callbacks or ProgressCallbacks()
        logger.info(
            "Running with %d messages (%d from history), %d tools",
            len(messages),
            len(messages) - 1,
            len(tools),
        )

        for iteration in range(1, self.max_iterations + 1):
            result.iterations = iteration
            logger.info("Iteration %d, calling model with %d tools", iteration, len(tools))
            reply = await self._call_model(system_prompt, messages, tools, callbacks)
            self._record_usage(result, reply, hooks, iteration)

            messages.append({"role": "assistant", "content": reply.content})
            state = next_state(reply.reason)

            if state is LoopState.DONE:
                result.text = reply.text()
                result.outcome = Outcome.COMPLETED
                return result

            if state is LoopState.DISPATCHING_TOOLS:
                thinking = reply.text()
                if thinking.strip():
                    hooks.emit("on_thinking", thinking)
                tool_uses = reply.tool_uses()
                hooks.emit("on_progress", f"Executing {len(tool_uses)} tool call(s)")
                blocks = await self._dispatch(catalog, tool_uses, hooks, result)
                messages.append({"role": "user", "content": blocks})
                continue

            if state is LoopState.TRUNCATED:
                result.text = reply.text() + TRUNCATION_NOTICE
                result.outcome = Outcome.TRUNCATED
                return result

            logger.warning("Unexpected stop_reason: %s", reply.stop_reason)
            result.outcome = Outcome.ABORTED
            break

        result.text = self.max_iterations_message()
        return result

    async def _call_model(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        callbacks: ProgressCallbacks | None,
    ) -> ModelResponse:
        if callbacks is None:
            return await self._model.create_message(system_prompt, messages, tools)

        accumulator = MessageAccumulator()

        def on_timeout() -> None:
            logger.warning("Model stream idle for %ss, aborting", self.stream_idle_timeout)

        stream = self._model.stream_message(system_prompt, messages, tools)
        try:
            async with aclosing(with_timeout(stream, self.stream_idle_timeout, on_timeout)) as events:
                async for event in events:
                    delta = accumulator.feed(event)
                    if delta:
                        callbacks.emit("on_stream_chunk", delta)
        except TimeoutError as e:
            raise RunTimeoutError(
                self.stream_idle_timeout,
                f"Model stream stalled for more than {self.stream_idle_timeout:g}s",
            ) from e
        return accumulator.response()

    def _record_usage(
        self,
        result: RunResult,
        reply: ModelResponse,
        hooks: ProgressCallbacks,
        iteration: int,
    ) -> None:
        for key in USAGE_KEYS:
            result.usage[key] = result.usage.get(key, 0) + reply.usage.get(key, 0)
        if reply.usage.get("cache_creation_input_tokens"):
            logger.info("Cache created: %d tokens", reply.usage["cache_creation_input_tokens"])
        cache_read = reply.usage.get("cache_read_input_tokens", 0)
        if cache_read:
            logger.info("Cache read: %d tokens", cache_read)
            hooks.emit("on_cache_hit", cache_read)
        record_model_usage(reply.usage, iteration=iteration, stop_reason=reply.stop_reason)
        if self._metrics is not None:
            self._metrics.record_usage(reply.usage)

    async def _dispatch(
        self,
        catalog: ToolCatalog,
        tool_uses: list[dict[str, Any]],
        hooks: ProgressCallbacks,
        result: RunResult,
    ) -> list[dict[str, Any]]:
        """Run all tool calls of one turn concurrently; results keep tool_use order."""
        outcomes = await asyncio.gather(
            *(self._dispatch_one(catalog, block, hooks) for block in tool_uses)
        )
        blocks: list[dict[str, Any]] = []
        for block, record in outcomes:
            blocks.append(block)
            result.tool_calls.append(record)
        failed = sum(1 for b in blocks if is_tool_error(b))
        if failed:
            logger.info("%d of %d tool calls failed", failed, len(blocks))
        return blocks

    async def _dispatch_one(
        self,
        catalog: ToolCatalog,
        tool_use: dict[str, Any],
        hooks: ProgressCallbacks,
    ) -> tuple[dict[str, Any], ToolCallRecord]:
        tool_id = str(tool_use.get("id", ""))
        name = str(tool_use.get("name", ""))
        arguments = tool_use.get("input") or {}
        provider = catalog.provider_for(name)
        record = ToolCallRecord(id=tool_id, name=name, provider=provider.name if provider else None)
        hooks.emit("on_tool_use", name, arguments)
        logger.info("Calling tool %s", name)

        started = time.monotonic()
        try:
            if provider is None:
                raise ToolDispatchError(name, f"Unknown tool: {name}")
            raw = await asyncio.wait_for(
                self._mcp.call_tool(provider, name, arguments, timeout=self.tool_timeout),
                self.tool_timeout,
            )
            content = format_tool_content(raw)
            if isinstance(raw, dict) and raw.get("isError"):
                raise ToolDispatchError(name, content)
        except TimeoutError:
            record.error = f"{name} timed out after {self.tool_timeout:g}s"
        except ToolDispatchError as e:
            record.error = e.message
        except Exception as e:
            record.error = str(e) or type(e).__name__
        record.latency_s = round(time.monotonic() - started, 3)

        if self._metrics is not None:
            status = "error" if record.error else "success"
            self._metrics.tool_executions_total.labels(tool=name, status=status).inc()

        if record.error:
            logger.warning("Tool %s failed: %s", name, record.error)
            hooks.emit("on_tool_result", name, None, record.error)
            return tool_error(tool_id, record.error), record

        logger.info("Tool %s completed in %.2fs", name, record.latency_s)
        hooks.emit("on_tool_result", name, content, None)
        return tool_result(tool_id, content), record
