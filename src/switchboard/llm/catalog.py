"""Tool catalog: merges the tools of several MCP providers for one run."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from switchboard.errors import CatalogUnavailableError
from switchboard.llm.mcp_client import McpClient, ToolProvider

logger = logging.getLogger(__name__)

EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any]
    provider: str = ""

    def to_model_tool(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def normalize_tool(raw: dict[str, Any], provider: str = "") -> ToolDescriptor:
    """Normalize a ``tools/list`` entry into a model-facing descriptor."""
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ValueError("tool entry has no name")
    schema = raw.get("inputSchema") or raw.get("input_schema") or dict(EMPTY_SCHEMA)
    return ToolDescriptor(
        name=name,
        description=raw.get("description") or f"MCP tool: {name}",
        input_schema=schema,
        provider=provider,
    )


@dataclass
class ToolCatalog:
    """Merged tool descriptors plus the provider that owns each name."""

    tools: list[ToolDescriptor] = field(default_factory=list)
    providers: dict[str, ToolProvider] = field(default_factory=dict)
    _owners: dict[str, str] = field(default_factory=dict, repr=False)

    def add(self, provider: ToolProvider, raw_tools: list[dict[str, Any]]) -> int:
        """Add a provider's tools; returns how many were accepted."""
        self.providers[provider.name] = provider
        added = 0
        for raw in raw_tools:
            try:
                tool = normalize_tool(raw, provider.name)
            except ValueError:
                logger.warning("Skipping unnamed tool from %s", provider.name)
                continue
            owner = self._owners.get(tool.name)
            if owner is not None:
                logger.warning(
                    "Tool %s from %s shadowed by %s; keeping the first", tool.name, provider.name, owner
                )
                continue
            self._owners[tool.name] = provider.name
            self.tools.append(tool)
            added += 1
        return added

    def provider_for(self, tool_name: str) -> ToolProvider | None:
        owner = self._owners.get(tool_name)
        return self.providers.get(owner) if owner else None

    def names(self) -> list[str]:
        return [t.name for t in self.tools]

    def to_model_tools(self) -> list[dict[str, Any]]:
        return [t.to_model_tool() for t in self.tools]

    def __len__(self) -> int:
        return len(self.tools)

    @classmethod
    async def load(cls, client: McpClient, providers: list[ToolProvider]) -> ToolCatalog:
        """Fetch every provider concurrently and merge in declaration order.

        A required provider that cannot be listed raises
        ``CatalogUnavailableError``; optional providers just contribute nothing.
        """
        results = await asyncio.gather(
            *(client.list_tools(p) for p in providers), return_exceptions=True
        )
        catalog = cls()
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if provider.required:
                    logger.error("Required tool provider %s unavailable: %s", provider.name, result)
                    raise CatalogUnavailableError(provider.name, str(result)) from result
                logger.warning("Tool provider %s unavailable, continuing without it: %s", provider.name, result)
                continue
            added = catalog.add(provider, result)
            logger.info("Loaded %d tools from %s", added, provider.name)
        return catalog
