"""JSON-RPC 2.0 client for MCP tool providers served over HTTP.

Providers using the streamable-HTTP transport may answer a POST either with a
plain JSON body or with a short ``text/event-stream`` body whose ``data:``
lines carry the JSON-RPC response; both are accepted.
"""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from switchboard.errors import ToolDispatchError

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/json, text/event-stream"


@dataclass(frozen=True)
class ToolProvider:
    """One remote tool back-end."""

    name: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    required: bool = False  # Catalog failure is fatal for the run


def _decode_event_stream(text: str) -> dict[str, Any] | None:
    """Return the last JSON-RPC message carried by an SSE body."""
    message: dict[str, Any] | None = None
    data_lines: list[str] = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
            continue
        if line.strip() == "" and data_lines:
            try:
                candidate = json.loads("\n".join(data_lines))
            except json.JSONDecodeError:
                candidate = None
            if isinstance(candidate, dict) and ("result" in candidate or "error" in candidate):
                message = candidate
            data_lines = []
    return message


def decode_rpc_response(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON-RPC response body (plain JSON or SSE)."""
    content_type = response.headers.get("content-type", "")
    if "text/event-stream" in content_type:
        payload = _decode_event_stream(response.text)
        if payload is None:
            raise ValueError("event stream carried no JSON-RPC response")
        return payload
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected JSON-RPC payload: {type(payload).__name__}")
    return payload


def format_tool_content(result: Any) -> str:
    """Flatten an MCP ``tools/call`` result into text for a tool_result block."""
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list) and content and all(
            isinstance(item, dict) and item.get("type") == "text" for item in content
        ):
            return "\n".join(str(item.get("text", "")) for item in content)
        return json.dumps(content if content else result)
    if isinstance(result, str):
        return result
    return json.dumps(result)


class McpClient:
    """Calls ``tools/list`` and ``tools/call`` on remote providers."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        list_timeout: float = 10.0,
        call_timeout: float = 60.0,
    ):
        self._client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self.list_timeout = list_timeout
        self.call_timeout = call_timeout
        self._ids = itertools.count(1)

    async def _rpc(
        self,
        provider: ToolProvider,
        method: str,
        params: dict[str, Any] | None,
        timeout: float,
    ) -> Any:
        body: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": next(self._ids)}
        if params is not None:
            body["params"] = params
        headers = {
            "Content-Type": "application/json",
            "Accept": ACCEPT_HEADER,
            **provider.headers,
        }
        response = await self._client.post(provider.url, json=body, headers=headers, timeout=timeout)
        response.raise_for_status()
        payload = decode_rpc_response(response)
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise ToolDispatchError(
                str((params or {}).get("name") or method),
                f"{method} failed ({code}): {message}",
            )
        return payload.get("result")

    async def list_tools(self, provider: ToolProvider) -> list[dict[str, Any]]:
        """Return the raw tool entries advertised by ``provider``."""
        result = await self._rpc(provider, "tools/list", None, self.list_timeout)
        tools = (result or {}).get("tools") if isinstance(result, dict) else None
        return list(tools or [])

    async def call_tool(
        self,
        provider: ToolProvider,
        name: str,
        arguments: dict[str, Any] | None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke ``name`` on ``provider`` and return the JSON-RPC result.

        Transport failures and JSON-RPC errors raise ``ToolDispatchError``.
        """
        try:
            return await self._rpc(
                provider,
                "tools/call",
                {"name": name, "arguments": arguments or {}},
                timeout or self.call_timeout,
            )
        except ToolDispatchError:
            raise
        except httpx.HTTPStatusError as e:
            raise ToolDispatchError(
                name, f"{provider.name} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise ToolDispatchError(name, f"{provider.name} timed out") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ToolDispatchError(name, f"{provider.name} request failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
