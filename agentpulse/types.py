"""Shared snapshot models for monitored agents."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class AgentState(StrEnum):
    """Activity state reported for a logical agent."""

    ACTIVE = "active"
    IDLE = "idle"
    ERROR = "error"


class AgentKind(StrEnum):
    """Process flavour of a monitored agent."""

    TUI = "tui"
    EXEC = "exec"
    APP_SERVER = "app-server"
    OPENCODE_TUI = "opencode-tui"
    OPENCODE_CLI = "opencode-cli"
    OPENCODE_SERVER = "opencode-server"
    CLAUDE_TUI = "claude-tui"
    CLAUDE_CLI = "claude-cli"
    UNKNOWN = "unknown"

    @property
    def is_server(self) -> bool:
        return self.value.endswith("server")


@dataclass(slots=True)
class EventSummary:
    """One recent, human-readable event attached to a snapshot."""

    ts: float
    type: str
    summary: str
    is_error: bool = False


@dataclass(slots=True)
class WorkSummary:
    """What the agent was last seen doing."""

    current: str | None = None
    last_command: str | None = None
    last_edit: str | None = None
    last_message: str | None = None
    last_tool: str | None = None
    last_prompt: str | None = None


@dataclass(frozen=True, slots=True)
class AgentSnapshot:
    """Immutable projection of one logical agent at emission time."""

    id: str
    pid: int
    kind: AgentKind
    state: AgentState
    cmd: str = ""
    cmd_short: str = ""
    cpu: float = 0.0
    mem: float = 0.0
    identity: str | None = None
    started_at: float | None = None
    last_event_at: float | None = None
    last_activity_at: float | None = None
    activity_reason: str | None = None
    title: str | None = None
    doing: str | None = None
    session_path: str | None = None
    repo: str | None = None
    cwd: str | None = None
    model: str | None = None
    summary: WorkSummary | None = None
    events: tuple[EventSummary, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["state"] = self.state.value
        data["events"] = [asdict(e) for e in self.events]
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True, slots=True)
class SnapshotPayload:
    """A full emission: the whole agent map is the unit of truth."""

    ts: float
    agents: tuple[AgentSnapshot, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "ts": self.ts,
            "agents": [agent.to_dict() for agent in self.agents],
        }
        if self.meta:
            data["meta"] = dict(self.meta)
        return data
