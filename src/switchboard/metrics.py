"""Prometheus metrics for switchboard.

Metrics live on an injectable ``CollectorRegistry`` so tests and embedded
apps can use a private registry instead of the process-wide default.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import REGISTRY as DEFAULT_REGISTRY

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "switchboard"


class AgentMetrics:
    """Counters, gauges and histograms for agent runs and SSE connections."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else DEFAULT_REGISTRY

        self.query_duration_seconds = Histogram(
            f"{NAMESPACE}_agent_query_duration_seconds",
            "Duration of agent runs in seconds",
            ["agent", "outcome"],
            buckets=(1, 5, 10, 15, 30, 60, 90, 120),
            registry=self.registry,
        )
        self.tool_executions_total = Counter(
            f"{NAMESPACE}_agent_tool_executions_total",
            "Total number of tool executions",
            ["tool", "status"],  # "success" or "error"
            registry=self.registry,
        )
        self.cache_hits_total = Counter(
            f"{NAMESPACE}_agent_cache_hits_total",
            "Model turns that reused cached prompt context",
            registry=self.registry,
        )
        self.token_usage_total = Counter(
            f"{NAMESPACE}_agent_token_usage_total",
            "Total model token usage",
            ["type"],  # input, output, cache_creation, cache_read
            registry=self.registry,
        )
        self.errors_total = Counter(
            f"{NAMESPACE}_agent_errors_total",
            "Run-level errors by type",
            ["type"],
            registry=self.registry,
        )
        self.sse_connections_active = Gauge(
            f"{NAMESPACE}_sse_connections_active",
            "Number of currently open SSE connections",
            registry=self.registry,
        )

    def record_usage(self, usage: dict[str, int]) -> None:
        self.token_usage_total.labels(type="input").inc(usage.get("input_tokens", 0))
        self.token_usage_total.labels(type="output").inc(usage.get("output_tokens", 0))
        self.token_usage_total.labels(type="cache_creation").inc(
            usage.get("cache_creation_input_tokens", 0)
        )
        self.token_usage_total.labels(type="cache_read").inc(usage.get("cache_read_input_tokens", 0))
        if usage.get("cache_read_input_tokens", 0) > 0:
            self.cache_hits_total.inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
