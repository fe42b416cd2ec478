"""switchboard CLI - run the server, send queries, inspect tools and sessions.

Designed for:
- Scripts and agent skills (use --json for machine-readable output)
- Developer workflows (check config, list tools, replay a prompt)
- Direct human use (pretty text by default)
"""
from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from typing import Any, Optional

import typer

from switchboard.errors import CatalogUnavailableError, ModelAPIError, RunTimeoutError
from switchboard.llm.catalog import ToolCatalog
from switchboard.llm.mcp_client import McpClient
from switchboard.llm.sessions import SessionManager
from switchboard.prompt import build_profile
from switchboard.services.query_service import build_query_service
from switchboard.session import create_session_store
from switchboard.settings import Settings, load_settings

app = typer.Typer(help="switchboard CLI - LLM tool-use agent over remote MCP tools")


def _settings() -> Settings:
    try:
        settings = load_settings()
    except RuntimeError as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(code=1)
    logging.basicConfig(
        level=getattr(logging, settings.advanced.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


def _session_manager(settings: Settings) -> SessionManager:
    return SessionManager(
        create_session_store(),
        ttl=settings.session.ttl,
        max_history=settings.session.max_history,
        key_prefix=settings.session.key_prefix,
    )


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


@app.command()
def serve(
    port: Optional[int] = typer.Option(
        None,
        "--port",
        "-p",
        help="Port to serve the API on (default: PORT or 8080)",
    ),
    reload: bool = typer.Option(
        False,
        "--reload/--no-reload",
        help="Auto-reload on code changes",
    ),
) -> None:
    """Start the HTTP API (query, streaming, sessions, metrics).

    Example:
        switchboard serve
        switchboard serve --port 8001 --reload
    """
    settings = _settings()
    port = port or settings.port

    typer.echo(f"🌐 Starting switchboard on http://localhost:{port}")
    typer.echo("   Press Ctrl+C to stop")
    typer.echo("")

    cmd = [
        "uvicorn",
        "switchboard.web:build_web_app",
        "--factory",
        "--port",
        str(port),
        "--host",
        "0.0.0.0",
    ]
    if reload:
        cmd.append("--reload")

    try:
        subprocess.run(cmd, check=True, cwd=str(settings.project_root))
    except subprocess.CalledProcessError as e:
        typer.echo(f"❌ Failed to start server: {e}", err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.echo("\n✅ Server stopped")


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


@app.command()
def query(
    prompt: str = typer.Argument(..., help="Prompt to send to the agent"),
    session: Optional[str] = typer.Option(
        None,
        "--session",
        "-s",
        help="Session id to continue (default: a new session)",
    ),
    agent: str = typer.Option(
        "research",
        "--agent",
        "-a",
        help="Agent profile: research or browser",
    ),
    json_out: bool = typer.Option(
        False,
        "--json",
        help="Output JSON for agent skills / scripting.",
    ),
) -> None:
    """Run one prompt through the agent loop and print the answer.

    Examples:
        switchboard query "What changed in httpx 0.28?"
        switchboard query "Take a screenshot of example.com" --agent browser
        switchboard query "And the one before?" --session session-123
    """
    settings = _settings()
    try:
        build_profile(agent, settings)
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    service = build_query_service(settings, session_manager=_session_manager(settings))

    async def _run():
        try:
            return await service.run(prompt, session_id=session, agent=agent)
        finally:
            await service.aclose()

    try:
        result = asyncio.run(_run())
    except (RunTimeoutError, ModelAPIError, CatalogUnavailableError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    if json_out:
        payload = {
            "result": result.text,
            "sessionId": result.session_id,
            "outcome": result.outcome,
            "metadata": result.metadata(),
        }
        typer.echo(json.dumps(payload, default=str))
        return

    typer.echo(result.text)
    typer.echo("")
    tools = ", ".join(result.tools_used) or "none"
    typer.echo(
        f"session {result.session_id} · {result.outcome} · "
        f"{result.iterations} iterations · tools: {tools} · {result.elapsed_ms / 1000:.1f}s",
        err=True,
    )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@app.command()
def tools(
    agent: str = typer.Option(
        "research",
        "--agent",
        "-a",
        help="Agent profile whose providers to list",
    ),
    json_out: bool = typer.Option(
        False,
        "--json",
        help="Output JSON for agent skills / scripting.",
    ),
) -> None:
    """List the tools an agent would see, merged across its providers."""
    settings = _settings()
    try:
        profile = build_profile(agent, settings)
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    async def _load() -> ToolCatalog:
        client = McpClient(list_timeout=float(settings.mcp.list_timeout_seconds))
        try:
            return await ToolCatalog.load(client, profile.providers)
        finally:
            await client.aclose()

    try:
        catalog = asyncio.run(_load())
    except CatalogUnavailableError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    if json_out:
        payload = [
            {"name": t.name, "description": t.description, "provider": t.provider}
            for t in catalog.tools
        ]
        typer.echo(json.dumps(payload))
        return

    if not catalog.tools:
        typer.echo(f"No tools available for the {profile.name} agent")
        return

    typer.echo(f"*{profile.name} agent* ({len(catalog)} tools)")
    typer.echo("")
    for tool in catalog.tools:
        summary = tool.description.strip().splitlines()[0] if tool.description.strip() else ""
        typer.echo(f"  • {tool.name} [{tool.provider}] - {summary}")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@app.command()
def sessions(
    clear: Optional[str] = typer.Option(
        None,
        "--clear",
        help="Delete the session with this id",
    ),
    json_out: bool = typer.Option(
        False,
        "--json",
        help="Output JSON for agent skills / scripting.",
    ),
) -> None:
    """Show session store statistics, or delete one session."""
    settings = _settings()
    manager = _session_manager(settings)

    async def _run() -> dict[str, Any] | None:
        try:
            if clear:
                await manager.clear(clear)
                return None
            return await manager.stats()
        finally:
            await manager.aclose()

    stats = asyncio.run(_run())
    if stats is None:
        typer.echo(f"✓ Deleted session {clear}")
        return

    if json_out:
        typer.echo(json.dumps(stats, default=str))
        return

    typer.echo(f"Active sessions: {stats['activeSessions']}")
    typer.echo(f"Total messages: {stats['totalMessages']}")
    for item in stats["sessions"]:
        typer.echo(
            f"  • {item['id']}: {item['messageCount']} messages, "
            f"{item['turnCount']} turns, {item['ageMinutes']} min old"
        )


# ---------------------------------------------------------------------------
# Config inspection
# ---------------------------------------------------------------------------


@app.command()
def config(
    json_out: bool = typer.Option(
        False,
        "--json",
        help="Output JSON for agent skills / scripting.",
    ),
) -> None:
    """Show the loaded configuration. Secrets are reported as set/unset only."""
    settings = _settings()

    payload = {
        "project_root": str(settings.project_root),
        "model": settings.model.model,
        "anthropic_api_key": bool(settings.anthropic_api_key),
        "gateway_url": settings.mcp.gateway_url or None,
        "shared_secret": bool(settings.mcp.shared_secret),
        "browser_url": settings.mcp.browser_url,
        "max_iterations": settings.advanced.max_iterations,
        "run_timeout_seconds": settings.advanced.run_timeout_seconds,
        "browser_run_timeout_seconds": settings.advanced.browser_run_timeout_seconds,
        "session_store": settings.session.store,
        "session_ttl": settings.session.ttl,
        "max_history": settings.session.max_history,
        "max_connections": settings.streaming.max_connections,
        "port": settings.port,
    }

    if json_out:
        typer.echo(json.dumps(payload, default=str))
        return

    typer.echo("*switchboard Configuration*")
    typer.echo("")
    typer.echo(f"Model: {payload['model']}")
    typer.echo(f"API key: {'configured' if payload['anthropic_api_key'] else 'missing'}")
    typer.echo(f"Gateway: {payload['gateway_url'] or 'not configured'}")
    typer.echo(f"Browser provider: {payload['browser_url']}")
    typer.echo(f"Session store: {payload['session_store']} (ttl {payload['session_ttl']}s)")
    typer.echo(f"Port: {payload['port']}")
    typer.echo("")
    typer.echo(f"Project root: {payload['project_root']}")


if __name__ == "__main__":
    app()
