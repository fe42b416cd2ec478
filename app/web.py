"""HTTP API entry point for uvicorn.

Run::

    uv run uvicorn app.web:app --port 8080

Requires:  ``uv sync``

Note: Always use ``uv run`` to ensure the package is found. If you get
``ModuleNotFoundError: No module named 'switchboard'``, make sure you've run
``uv sync`` from the project root.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env early so settings see ANTHROPIC_API_KEY and the MCP endpoints
_env_candidates = [Path(__file__).resolve().parent.parent / ".env", Path.cwd() / ".env"]
for _p in _env_candidates:
    if _p.exists():
        load_dotenv(_p, override=True)
        break
else:
    load_dotenv(override=True)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def _get_app():
    from switchboard.settings import load_settings
    from switchboard.web import build_web_app

    try:
        settings = load_settings()
    except RuntimeError as e:
        raise RuntimeError(f"Cannot start switchboard - {e}") from e

    # Validate session config at startup (fail fast on an unknown store)
    try:
        from switchboard.session import create_session_store

        create_session_store()
    except ValueError as e:
        raise RuntimeError(
            f"Cannot start switchboard - session config invalid: {e}\n"
            "Set session.store to memory or redis in switchboard.yaml, or SESSION_STORE in .env."
        ) from e

    return build_web_app(settings)


app = _get_app()
