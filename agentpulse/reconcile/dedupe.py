"""Collapse snapshots that describe the same logical agent."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..types import AgentSnapshot, AgentState

logger = logging.getLogger(__name__)

STATE_RANK: dict[AgentState, int] = {
    AgentState.ERROR: 3,
    AgentState.ACTIVE: 2,
    AgentState.IDLE: 1,
}


def dedupe_key(agent: AgentSnapshot) -> str:
    """Group key; servers live in their own namespace so a client never merges into one."""
    base = agent.identity or agent.session_path or f"pid:{agent.pid}"
    namespace = "server" if agent.kind.is_server else "agent"
    return f"{namespace}:{base}"


def _precedence(agent: AgentSnapshot) -> tuple[float, ...]:
    return (
        STATE_RANK.get(agent.state, 0),
        agent.last_event_at or 0,
        agent.cpu,
        agent.mem,
        agent.started_at or 0,
    )


def pick_better(current: AgentSnapshot, challenger: AgentSnapshot) -> AgentSnapshot:
    """Return the stronger snapshot; ``current`` keeps a full tie."""
    if _precedence(challenger) > _precedence(current):
        return challenger
    return current


def dedupe_agents(agents: Iterable[AgentSnapshot]) -> list[AgentSnapshot]:
    """Keep the best snapshot per dedup key, in first-seen key order."""
    best: dict[str, AgentSnapshot] = {}
    for agent in agents:
        key = dedupe_key(agent)
        existing = best.get(key)
        if existing is None:
            best[key] = agent
            continue
        winner = pick_better(existing, agent)
        if logger.isEnabledFor(logging.DEBUG):
            loser = agent if winner is existing else existing
            logger.debug(
                "dedupe key=%s kept=%s(%s) dropped=%s(%s)",
                key,
                winner.id,
                winner.state,
                loser.id,
                loser.state,
            )
        best[key] = winner
    return list(best.values())
