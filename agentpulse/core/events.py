"""Store event vocabulary and per-agent runtime records."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, fields
from enum import StrEnum
from typing import Any

from ..types import AgentKind, AgentSnapshot, AgentState, EventSummary, WorkSummary


class EventType(StrEnum):
    """The closed set of events the store accepts."""

    PRESENCE_UP = "presence.up"
    PRESENCE_DOWN = "presence.down"
    SPAN_START = "span.start"
    SPAN_PROGRESS = "span.progress"
    SPAN_END = "span.end"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"


class SpanKind(StrEnum):
    TURN = "turn"
    MODEL_STREAM = "model_stream"
    TOOL = "tool"
    COMMAND = "command"
    FILE_EDIT = "file_edit"


@dataclass(slots=True)
class AgentMeta:
    """Descriptive fields merged into an agent's record on every event.

    ``None`` means "not reported by this event" and never erases a value that
    an earlier event supplied.
    """

    pid: int | None = None
    kind: AgentKind | None = None
    cmd: str | None = None
    cmd_short: str | None = None
    title: str | None = None
    doing: str | None = None
    cwd: str | None = None
    repo: str | None = None
    model: str | None = None
    session_path: str | None = None
    identity: str | None = None
    summary: WorkSummary | None = None
    has_error: bool | None = None
    cpu: float | None = None
    mem: float | None = None
    started_at: float | None = None

    def merge(self, other: AgentMeta | None) -> None:
        if other is None:
            return
        for f in fields(self):
            value = getattr(other, f.name)
            if value is not None:
                setattr(self, f.name, value)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AgentMeta:
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if isinstance(values.get("kind"), str):
            try:
                values["kind"] = AgentKind(values["kind"])
            except ValueError:
                values["kind"] = AgentKind.UNKNOWN
        if isinstance(values.get("summary"), dict):
            summary_fields = {f.name for f in fields(WorkSummary)}
            values["summary"] = WorkSummary(
                **{k: v for k, v in values["summary"].items() if k in summary_fields}
            )
        return cls(**values)


@dataclass(slots=True)
class AgentEvent:
    """One inbound event for the store.

    ``span_id`` and ``span_kind`` are only meaningful for the ``span.*``
    types; a ``span.start`` without a ``span_id`` uses the span kind as its id.
    """

    type: EventType
    agent_key: str
    ts: float
    meta: AgentMeta | None = None
    span_id: str | None = None
    span_kind: SpanKind | None = None
    summary: str | None = None

    @property
    def resolved_span_id(self) -> str:
        if self.span_id:
            return self.span_id
        return str(self.span_kind or SpanKind.TURN)


@dataclass(slots=True)
class Span:
    kind: SpanKind
    started_at: float
    last_progress_at: float


@dataclass(slots=True)
class AgentRuntimeState:
    """Mutable record owned by the store; one per logical agent key."""

    key: str
    presence_up: bool = False
    meta: AgentMeta = field(default_factory=AgentMeta)
    spans: dict[str, Span] = field(default_factory=dict)
    blocked: bool = False
    last_event_at: float | None = None
    recent: list[EventSummary] = field(default_factory=list)
    idle_timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    stale_timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def touch(self, ts: float) -> None:
        if self.last_event_at is None or ts > self.last_event_at:
            self.last_event_at = ts

    def cancel_idle(self) -> None:
        if self.idle_timer is not None:
            self.idle_timer.cancel()
            self.idle_timer = None

    def cancel_stale(self) -> None:
        if self.stale_timer is not None:
            self.stale_timer.cancel()
            self.stale_timer = None

    def cancel_timers(self) -> None:
        self.cancel_idle()
        self.cancel_stale()

    def derive_state(self) -> tuple[AgentState, str]:
        if self.meta.has_error:
            return AgentState.ERROR, "error"
        if self.blocked:
            return AgentState.IDLE, "blocked"
        # A pending idle debounce still reads as active, whoever triggers the emit.
        if self.presence_up and (self.spans or self.idle_timer is not None):
            return AgentState.ACTIVE, "span_open"
        return AgentState.IDLE, "no_span"

    def last_activity_at(self) -> float | None:
        progress = [span.last_progress_at for span in self.spans.values()]
        if progress:
            return max(progress)
        return self.last_event_at

    def to_snapshot(self) -> AgentSnapshot:
        state, reason = self.derive_state()
        meta = self.meta
        current = None
        if self.spans and not self.blocked:
            current = max(self.spans.values(), key=lambda s: s.last_progress_at).kind.value
        summary = meta.summary
        if summary is not None:
            summary = WorkSummary(
                current=current or summary.current,
                last_command=summary.last_command,
                last_edit=summary.last_edit,
                last_message=summary.last_message,
                last_tool=summary.last_tool,
                last_prompt=summary.last_prompt,
            )
        return AgentSnapshot(
            id=self.key,
            pid=meta.pid or 0,
            kind=meta.kind or AgentKind.UNKNOWN,
            state=state,
            cmd=meta.cmd or "",
            cmd_short=meta.cmd_short or "",
            cpu=meta.cpu or 0.0,
            mem=meta.mem or 0.0,
            identity=meta.identity or self.key,
            started_at=meta.started_at,
            last_event_at=self.last_event_at,
            last_activity_at=self.last_activity_at(),
            activity_reason=reason,
            title=meta.title,
            doing="waiting for approval" if self.blocked else meta.doing,
            session_path=meta.session_path,
            repo=meta.repo,
            cwd=meta.cwd,
            model=meta.model,
            summary=summary,
            events=tuple(self.recent),
        )
