"""Observability for the agent.

Uses Logfire when configured (LOGFIRE_TOKEN or LOGTAIL_TOKEN).
All functions are no-ops or log-only when not configured.
"""
from switchboard.backends.observability.logfire import (
    configure as configure_observability,
    record_model_usage,
)

__all__ = [
    "configure_observability",
    "record_model_usage",
]
