"""Configuration for switchboard.

Loads configuration from:
1. switchboard.yaml (model, tool providers, loop limits, sessions, streaming)
2. Environment variables (.env), which take precedence over the YAML file
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv


@dataclass(frozen=True)
class ModelConfig:
    """Model service configuration."""
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 16384
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    request_timeout_seconds: int = 120
    prompt_caching: bool = True


@dataclass(frozen=True)
class McpConfig:
    """Remote tool providers (MCP over HTTP/JSON-RPC)."""
    gateway_url: str = ""
    shared_secret: str = ""
    secret_header: str = "X-MCP-Secret"
    browser_url: str = "http://localhost:8003/mcp"
    list_timeout_seconds: int = 10
    call_timeout_seconds: int = 60


@dataclass(frozen=True)
class AdvancedConfig:
    """Agent loop limits and technical settings."""
    max_iterations: int = 15
    history_window: int = 10  # Prior messages sent to the model per run
    run_timeout_seconds: int = 120  # Whole research run (model + tools)
    browser_run_timeout_seconds: int = 90  # Whole browser run
    stream_idle_timeout_seconds: int = 60  # Max gap between streamed model events
    log_level: str = "INFO"


@dataclass(frozen=True)
class SessionConfig:
    """Session state storage configuration."""
    store: str = "memory"  # "memory" or "redis"
    url: str = "redis://localhost:6379"  # URL for redis store
    ttl: int = 86400  # Session TTL in seconds, reset on every write
    maxsize: int = 500  # Max sessions for memory store
    max_history: int = 20  # Messages kept per session
    key_prefix: str = "switchboard:session:"


@dataclass(frozen=True)
class StreamingConfig:
    """Server-sent events configuration."""
    max_connections: int = 50
    keep_alive_seconds: int = 15
    keep_alive_backlog: int = 256  # Skip keep-alives once this many frames are unsent


@dataclass(frozen=True)
class Settings:
    """Complete switchboard configuration."""
    project_root: Path

    model: ModelConfig
    mcp: McpConfig
    advanced: AdvancedConfig
    session: SessionConfig
    streaming: StreamingConfig

    anthropic_api_key: str | None = None
    port: int = 8080


def _find_project_root() -> Path:
    """Find project root by looking for switchboard.yaml or a .env file."""
    current = Path.cwd().resolve()

    for path in [current] + list(current.parents):
        if (path / "switchboard.yaml").exists():
            return path
        if (path / ".env").exists():
            return path

    return current


def _load_yaml_config(path: Path) -> dict[str, Any]:
    """Load and parse YAML config file."""
    if not path.exists():
        return {}

    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _int_env(name: str, default: int) -> int:
    """Parse int env values safely with fallback."""
    value = os.getenv(name)
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def load_settings() -> Settings:
    """Load switchboard configuration.

    Process:
    1. Find project root
    2. Load .env file
    3. Load switchboard.yaml (if exists)
    4. Apply env overrides
    5. Build Settings object
    """
    project_root = _find_project_root()

    env_file = project_root / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    config = _load_yaml_config(project_root / "switchboard.yaml")

    model_config = config.get("model") or {}
    model = ModelConfig(
        model=os.getenv("LLM_MODEL") or model_config.get("model", ModelConfig.model),
        max_tokens=int(model_config.get("max_tokens", 16384)),
        base_url=str(
            os.getenv("ANTHROPIC_BASE_URL") or model_config.get("base_url") or ModelConfig.base_url
        ).rstrip("/"),
        api_version=str(model_config.get("api_version", "2023-06-01")),
        request_timeout_seconds=int(model_config.get("request_timeout_seconds", 120)),
        prompt_caching=bool(model_config.get("prompt_caching", True)),
    )

    mcp_config = config.get("mcp") or {}
    mcp = McpConfig(
        gateway_url=os.getenv("MCP_GATEWAY_URL") or mcp_config.get("gateway_url", ""),
        shared_secret=os.getenv("MCP_SHARED_SECRET") or mcp_config.get("shared_secret", ""),
        secret_header=mcp_config.get("secret_header", "X-MCP-Secret"),
        browser_url=os.getenv("BROWSER_MCP_URL")
        or mcp_config.get("browser_url", "http://localhost:8003/mcp"),
        list_timeout_seconds=int(mcp_config.get("list_timeout_seconds", 10)),
        call_timeout_seconds=int(mcp_config.get("call_timeout_seconds", 60)),
    )

    advanced_config = config.get("advanced") or {}
    advanced = AdvancedConfig(
        max_iterations=int(advanced_config.get("max_iterations", 15)),
        history_window=int(advanced_config.get("history_window", 10)),
        run_timeout_seconds=int(advanced_config.get("run_timeout_seconds", 120)),
        browser_run_timeout_seconds=int(advanced_config.get("browser_run_timeout_seconds", 90)),
        stream_idle_timeout_seconds=int(advanced_config.get("stream_idle_timeout_seconds", 60)),
        log_level=os.getenv("LOG_LEVEL") or advanced_config.get("log_level", "INFO"),
    )

    session_config = config.get("session") or {}
    session = SessionConfig(
        store=(os.getenv("SESSION_STORE") or session_config.get("store") or "memory").strip().lower(),
        url=os.getenv("SESSION_URL")
        or os.getenv("REDIS_URL")
        or session_config.get("url", "redis://localhost:6379"),
        ttl=_int_env("SESSION_TTL", int(session_config.get("ttl", 86400))),
        maxsize=_int_env("SESSION_MAXSIZE", int(session_config.get("maxsize", 500))),
        max_history=int(session_config.get("max_history", 20)),
        key_prefix=session_config.get("key_prefix", "switchboard:session:"),
    )

    streaming_config = config.get("streaming") or {}
    streaming = StreamingConfig(
        max_connections=int(streaming_config.get("max_connections", 50)),
        keep_alive_seconds=int(streaming_config.get("keep_alive_seconds", 15)),
        keep_alive_backlog=int(streaming_config.get("keep_alive_backlog", 256)),
    )

    api_key = os.getenv("ANTHROPIC_API_KEY")

    # Guardrails for production deployments.
    env_name = str(os.getenv("SWITCHBOARD_ENV", "")).strip().lower()
    if env_name in {"prod", "production"} and not api_key:
        raise RuntimeError(
            "SWITCHBOARD_ENV=production requires ANTHROPIC_API_KEY. "
            "Set it in .env or in the process environment."
        )

    return Settings(
        project_root=project_root,
        model=model,
        mcp=mcp,
        advanced=advanced,
        session=session,
        streaming=streaming,
        anthropic_api_key=api_key,
        port=_int_env("PORT", int(config.get("port", 8080))),
    )
