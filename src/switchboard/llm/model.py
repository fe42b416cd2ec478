"""Anthropic Messages API client used by the agent loop.

Only what the loop needs is modelled: the request body (system prompt with a
cache-control marker, messages, tools, ``tool_choice: auto``), the response
``stop_reason``/``content``/``usage``, and the streamed event sequence.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from switchboard.errors import ModelAPIError

logger = logging.getLogger(__name__)

USAGE_KEYS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> StopReason:
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


@dataclass
class ModelResponse:
    stop_reason: str | None
    content: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def reason(self) -> StopReason:
        return StopReason.parse(self.stop_reason)

    def text(self) -> str:
        return "\n".join(b.get("text", "") for b in self.content if b.get("type") == "text")

    def tool_uses(self) -> list[dict[str, Any]]:
        return [b for b in self.content if b.get("type") == "tool_use"]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ModelResponse:
        usage = payload.get("usage") or {}
        return cls(
            stop_reason=payload.get("stop_reason"),
            content=list(payload.get("content") or []),
            usage={k: int(usage.get(k) or 0) for k in USAGE_KEYS},
        )


class MessageAccumulator:
    """Folds streamed Messages API events into a ``ModelResponse``."""

    def __init__(self) -> None:
        self._blocks: dict[int, dict[str, Any]] = {}
        self._partial_json: dict[int, list[str]] = {}
        self.stop_reason: str | None = None
        self.usage: dict[str, int] = {k: 0 for k in USAGE_KEYS}

    def _merge_usage(self, usage: dict[str, Any] | None) -> None:
        for key in USAGE_KEYS:
            if usage and usage.get(key) is not None:
                self.usage[key] = int(usage[key])

    def feed(self, event: dict[str, Any]) -> str | None:
        """Apply one event. Returns the text delta it carried, if any."""
        etype = event.get("type")
        if etype == "message_start":
            self._merge_usage((event.get("message") or {}).get("usage"))
        elif etype == "content_block_start":
            index = int(event.get("index", len(self._blocks)))
            block = dict(event.get("content_block") or {})
            if block.get("type") == "tool_use":
                self._partial_json[index] = []
            self._blocks[index] = block
        elif etype == "content_block_delta":
            index = int(event.get("index", 0))
            delta = event.get("delta") or {}
            block = self._blocks.setdefault(index, {"type": "text", "text": ""})
            if delta.get("type") == "text_delta":
                text = delta.get("text", "")
                block["text"] = block.get("text", "") + text
                return text
            if delta.get("type") == "input_json_delta":
                self._partial_json.setdefault(index, []).append(delta.get("partial_json", ""))
        elif etype == "content_block_stop":
            index = int(event.get("index", 0))
            parts = self._partial_json.pop(index, None)
            if parts is not None:
                raw = "".join(parts)
                try:
                    self._blocks[index]["input"] = json.loads(raw) if raw else {}
                except json.JSONDecodeError as e:
                    # The HTTP exchange itself succeeded; the payload did not.
                    raise ModelAPIError(
                        200,
                        {"type": "invalid_tool_input", "index": index, "partial_json": raw},
                    ) from e
        elif etype == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self.stop_reason = delta["stop_reason"]
            self._merge_usage(event.get("usage"))
        return None

    def response(self) -> ModelResponse:
        content = [self._blocks[i] for i in sorted(self._blocks)]
        return ModelResponse(stop_reason=self.stop_reason, content=content, usage=dict(self.usage))


class ModelClient:
    """Thin async client for ``POST /v1/messages``."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 16384,
        base_url: str = "https://api.anthropic.com",
        api_version: str = "2023-06-01",
        prompt_caching: bool = True,
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.prompt_caching = prompt_caching
        self._url = f"{base_url.rstrip('/')}/v1/messages"
        self._headers = {
            "x-api-key": api_key,
            "anthropic-version": api_version,
            "content-type": "application/json",
        }
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    def build_request(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        stream: bool = False,
    ) -> dict[str, Any]:
        system_block: dict[str, Any] = {"type": "text", "text": system}
        if self.prompt_caching:
            system_block["cache_control"] = {"type": "ephemeral"}
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": [system_block],
            "messages": messages,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = {"type": "auto"}
        if stream:
            body["stream"] = True
        return body

    async def create_message(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        """Send one turn and return the complete reply."""
        response = await self._client.post(
            self._url, headers=self._headers, json=self.build_request(system, messages, tools)
        )
        if response.status_code != 200:
            body = _error_body(response.content)
            logger.error("Model API error %s: %s", response.status_code, body)
            raise ModelAPIError(response.status_code, body, self.model)
        return ModelResponse.from_payload(response.json())

    async def stream_message(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[dict[str, Any]]:
        """Send one turn with ``stream: true`` and yield the decoded events.

        The HTTP stream is closed when the generator is closed, whether the
        consumer finished, stopped early or timed out.
        """
        body = self.build_request(system, messages, tools, stream=True)
        async with self._client.stream("POST", self._url, headers=self._headers, json=body) as response:
            if response.status_code != 200:
                body_bytes = await response.aread()
                error = _error_body(body_bytes)
                logger.error("Model API error %s: %s", response.status_code, error)
                raise ModelAPIError(response.status_code, error, self.model)
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if not data:
                    continue
                event = json.loads(data)
                if event.get("type") == "error":
                    raise ModelAPIError(response.status_code, event.get("error"), self.model)
                yield event

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_body(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return raw.decode("utf-8", errors="replace")
