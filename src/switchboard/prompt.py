"""Agent profiles: system prompt, tool providers and run deadline.

Two profiles exist:

``research``
  Tools from the MCP gateway (documentation lookup, web search, scraping).
  The gateway is optional: if it cannot be listed the agent answers without
  tools.

``browser``
  Tools from the dedicated browser-automation provider. The provider is
  required: a run cannot start without its catalog.

``build_profile()`` is the only function the rest of the codebase calls.
A ``RULES.md`` in the project root is appended to every system prompt.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from switchboard.llm.mcp_client import ToolProvider
from switchboard.settings import Settings

logger = logging.getLogger(__name__)

AGENTS = ("research", "browser")


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

RESEARCH_PROMPT_TEMPLATE = """\
You are a research agent. Your job is to gather accurate, well-sourced information with the tools you are given and turn it into clear, actionable answers.

Today is {current_date} ({day_of_week}).

## Method

1. Work out what kind of information the question needs.
2. Pick the right tool for it:
   - library or API questions: resolve the library, then fetch its documentation
   - "latest" or "best practice" questions: use the search and research tools, they have current data
   - content of a specific page: scrape it
3. Use several tools when one is not enough. Independent lookups can be requested together.
4. Cite your sources with URLs and include versions or dates when they matter.
5. Synthesize. Do not paste raw tool output.

## Tool Errors

A tool result starting with "Tool error:" means that call failed. Try another tool or a narrower request, and say so if the information stays out of reach.

## Delegation

You have no browser automation tools. When a task needs navigation, clicking, screenshots or dynamic page content, say that it needs the browser agent and give the prompt to send it.
{rules_content}"""

BROWSER_PROMPT_TEMPLATE = """\
You are a browser automation agent. Your job is to drive a real browser to navigate pages, interact with them, extract dynamic content and run end-to-end checks.

Today is {current_date} ({day_of_week}).

## Method

1. Always navigate first. Nothing can be clicked or read before the page is loaded.
2. Prefer stable selectors (data-testid, ids) over classes.
3. Take a screenshot at key steps and whenever something fails.
4. Extract data with the visible-text or evaluate tools rather than raw HTML when possible.
5. Close the browser when you are done.

## Limits

Browsers are scarce. Batch similar operations, keep sessions short, and expect slow pages or bot detection on some sites.

## Tool Errors

A tool result starting with "Tool error:" means that call failed. Check the console logs or a screenshot before retrying, and report what went wrong if you cannot recover.

## Delegation

You only have browser tools. For documentation lookups or general web research, say that it needs the research agent and give the prompt to send it.
{rules_content}"""


@dataclass(frozen=True)
class AgentProfile:
    """Everything that differs between the research and browser agents."""

    name: str
    system_prompt: str
    providers: list[ToolProvider] = field(default_factory=list)
    run_timeout: float = 120.0
    label: str = ""


def _load_rules_content(project_root: Path | None = None) -> str:
    """Load RULES.md content if it exists, without its title/intro lines."""
    if not project_root:
        return ""

    rules_file = project_root / "RULES.md"
    if not rules_file.exists():
        return ""

    try:
        content = rules_file.read_text(encoding="utf-8").strip()
    except OSError:
        logger.warning("Could not read %s", rules_file)
        return ""

    filtered: list[str] = []
    skip_intro = True
    for line in content.split("\n"):
        if skip_intro:
            if line.startswith("# ") or line.startswith("> ") or line.strip() == "":
                continue
            skip_intro = False
        filtered.append(line)

    result = "\n".join(filtered).strip()
    return f"\n## Operator Rules\n\n{result}\n" if result else ""


def build_system_prompt(agent: str, project_root: Path | None = None) -> str:
    today = date.today()
    template = BROWSER_PROMPT_TEMPLATE if agent == "browser" else RESEARCH_PROMPT_TEMPLATE
    return template.format(
        current_date=today.isoformat(),
        day_of_week=today.strftime("%A"),
        rules_content=_load_rules_content(project_root),
    )


def gateway_provider(settings: Settings) -> ToolProvider | None:
    url = settings.mcp.gateway_url
    if not url:
        return None
    headers: dict[str, str] = {}
    if settings.mcp.shared_secret:
        headers[settings.mcp.secret_header] = settings.mcp.shared_secret
    return ToolProvider(name="gateway", url=url, headers=headers, required=False)


def browser_provider(settings: Settings) -> ToolProvider:
    return ToolProvider(name="browser", url=settings.mcp.browser_url, required=True)


def build_profile(agent: str, settings: Settings) -> AgentProfile:
    """Resolve an agent name to its prompt, providers and deadline.

    Raises:
        ValueError: Unknown agent name.
    """
    agent = (agent or "research").strip().lower()
    if agent not in AGENTS:
        raise ValueError(f"Unknown agent '{agent}'. Use one of: {', '.join(AGENTS)}")

    prompt = build_system_prompt(agent, settings.project_root)
    if agent == "browser":
        return AgentProfile(
            name="browser",
            system_prompt=prompt,
            providers=[browser_provider(settings)],
            run_timeout=float(settings.advanced.browser_run_timeout_seconds),
            label="AGENT:BROWSER",
        )

    gateway = gateway_provider(settings)
    if gateway is None:
        logger.warning("MCP_GATEWAY_URL not set; research agent runs without tools")
    return AgentProfile(
        name="research",
        system_prompt=prompt,
        providers=[gateway] if gateway else [],
        run_timeout=float(settings.advanced.run_timeout_seconds),
        label="AGENT:RESEARCH",
    )
