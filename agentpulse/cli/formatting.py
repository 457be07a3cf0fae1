"""Formatting helpers for terminal output."""

from __future__ import annotations

import time

from rich.markup import escape
from rich.table import Table

from ..types import AgentSnapshot, AgentState, SnapshotPayload

MUTED = "bright_black"
ERROR = "red"

STATE_COLORS: dict[AgentState, str] = {
    AgentState.ACTIVE: "green",
    AgentState.IDLE: MUTED,
    AgentState.ERROR: ERROR,
}


def _markup(text: str, color: str) -> str:
    """Wrap text in Rich markup with the given color, escaping special chars."""
    return f"[{color}]{escape(text)}[/{color}]"


def format_age(ts_ms: float | None, now_ms: float | None = None) -> str:
    """Compact age of an epoch-ms timestamp ("4s", "2m10s", "1h5m")."""
    if ts_ms is None:
        return "-"
    now_ms = time.time() * 1000 if now_ms is None else now_ms
    secs = max(int((now_ms - ts_ms) / 1000), 0)
    if secs < 60:
        return f"{secs}s"
    if secs < 3600:
        return f"{secs // 60}m{secs % 60}s"
    return f"{secs // 3600}h{(secs % 3600) // 60}m"


def _truncate(text: str | None, limit: int) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _agent_row(agent: AgentSnapshot, now_ms: float) -> list[str]:
    state_color = STATE_COLORS.get(agent.state, "default")
    return [
        str(agent.pid) if agent.pid else "-",
        agent.kind.value,
        _markup(agent.state.value, state_color),
        agent.activity_reason or "",
        f"{agent.cpu:.1f}",
        format_age(agent.last_activity_at or agent.last_event_at, now_ms),
        escape(_truncate(agent.title, 40)),
        escape(_truncate(agent.doing, 60)),
    ]


def render_agents_table(payload: SnapshotPayload) -> Table:
    """Table of every agent in ``payload``, active ones first."""
    table = Table(show_header=True, header_style="bold cyan", border_style=MUTED)
    table.add_column("PID", style="blue", justify="right")
    table.add_column("Kind", style=MUTED)
    table.add_column("State")
    table.add_column("Reason", style=MUTED)
    table.add_column("CPU%", justify="right")
    table.add_column("Last", justify="right")
    table.add_column("Title")
    table.add_column("Doing", overflow="fold")
    order = {AgentState.ERROR: 0, AgentState.ACTIVE: 1, AgentState.IDLE: 2}
    agents = sorted(payload.agents, key=lambda a: (order.get(a.state, 3), a.pid))
    for agent in agents:
        table.add_row(*_agent_row(agent, payload.ts))
    if not agents:
        table.caption = "No agents detected"
    return table
