"""Logfire-based observability backend.

Provides tracing (via instrument_httpx, which covers model and tool calls)
and model-usage events. If Logfire is not configured, all functions are no-ops.
"""

from __future__ import annotations

import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

_configured: bool = False
_enabled: bool = False


def configure() -> bool:
    """Configure Logfire and instrument httpx. Call once at process startup.

    Skips configuration when no token is present to avoid interactive prompts.

    Returns True if Logfire was configured, False otherwise (no-op).
    """
    global _configured, _enabled
    if _configured:
        return _enabled

    _configured = True
    if not (os.getenv("LOGFIRE_TOKEN") or os.getenv("LOGTAIL_TOKEN")):
        return False

    try:
        import logfire

        logfire.configure(send_to_logfire="if-token-present", service_name="switchboard")
        logfire.instrument_httpx()
        logger.info("Logfire configured and httpx instrumented")
        _enabled = True
    except ImportError:
        logger.warning("Logfire env vars set but package not installed. Run: uv sync")
    except Exception as e:
        logger.warning("Failed to configure Logfire: %s", e)
    return _enabled


def record_model_usage(usage: dict[str, int], **attrs: Any) -> None:
    """Record token counters for one model turn.

    Always logged at debug level; also sent to Logfire when configured.
    """
    logger.debug(
        "Model usage: input=%s output=%s cache_created=%s cache_read=%s",
        usage.get("input_tokens", 0),
        usage.get("output_tokens", 0),
        usage.get("cache_creation_input_tokens", 0),
        usage.get("cache_read_input_tokens", 0),
    )
    if not _enabled:
        return
    try:
        import logfire

        logfire.info("model_usage", **usage, **attrs)
    except Exception as e:
        logger.warning("Failed to record usage to Logfire: %s", e)
