"""Evidence adapters for the headless CLI agent.

Two channels exist: notify hooks (``thread.started``, ``item.completed``,
``agent-turn-complete`` ...) that feed a per-thread in-flight tracker, and
structured session-log summaries that are turned into ``turn`` spans.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..core.events import AgentEvent, AgentMeta, EventType, SpanKind
from ..types import AgentKind, EventSummary, WorkSummary

logger = logging.getLogger(__name__)

TURN_SPAN = "turn"


@dataclass(frozen=True, slots=True)
class CodexNotifyEvent:
    type: str
    thread_id: str
    ts: float
    turn_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Any, now: float | None = None) -> CodexNotifyEvent | None:
        """Accept the several spellings notify payloads use; None if unusable."""
        if not isinstance(payload, dict):
            return None
        thread = payload.get("thread") if isinstance(payload.get("thread"), dict) else {}
        turn = payload.get("turn") if isinstance(payload.get("turn"), dict) else {}
        event_type = payload.get("event") or payload.get("type") or payload.get("event-type")
        thread_id = (
            payload.get("threadId")
            or payload.get("thread_id")
            or payload.get("thread-id")
            or thread.get("id")
        )
        turn_id = (
            payload.get("turnId")
            or payload.get("turn_id")
            or payload.get("turn-id")
            or turn.get("id")
            or turn.get("index")
        )
        if not isinstance(event_type, str) or not isinstance(thread_id, str):
            return None
        if not event_type or not thread_id:
            return None
        ts = payload.get("timestamp")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)):
            ts = now if now is not None else time.time() * 1000
        return cls(
            type=event_type,
            thread_id=thread_id,
            ts=float(ts),
            turn_id=str(turn_id) if isinstance(turn_id, (str, int)) else None,
        )

    def to_payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "thread_id": self.thread_id,
            "timestamp": self.ts,
        }
        if self.turn_id is not None:
            data["turn_id"] = self.turn_id
        return data


@dataclass(slots=True)
class CodexThreadState:
    in_flight: bool
    last_activity_at: float
    active_items: set[str] = field(default_factory=set)


class CodexThreadTracker:
    """Reduce notify events into per-thread in-flight state."""

    def __init__(self) -> None:
        self._threads: dict[str, CodexThreadState] = {}

    def handle(self, event: CodexNotifyEvent) -> CodexThreadState | None:
        current = self._threads.get(event.thread_id)
        items = set(current.active_items) if current else set()
        if event.type in ("thread.started", "turn.started"):
            state = CodexThreadState(True, event.ts, items)
        elif event.type == "item.started":
            if event.turn_id:
                items.add(event.turn_id)
            state = CodexThreadState(True, event.ts, items)
        elif event.type == "item.completed":
            items.discard(event.turn_id or "")
            state = CodexThreadState(bool(items), event.ts, items)
        elif event.type == "agent-turn-complete":
            state = CodexThreadState(False, event.ts, set())
        else:
            logger.debug("Ignoring notify event %r for thread %s", event.type, event.thread_id)
            return current
        self._threads[event.thread_id] = state
        return state

    def get(self, thread_id: str | None) -> CodexThreadState | None:
        if not thread_id:
            return None
        return self._threads.get(thread_id)

    def forget(self, thread_id: str) -> None:
        self._threads.pop(thread_id, None)

    def __len__(self) -> int:
        return len(self._threads)


@dataclass(frozen=True, slots=True)
class LogSummary:
    """Digest of one session log produced by the log-tailing collaborator."""

    session_path: str
    in_flight: bool | None = None
    last_event_at: float | None = None
    last_activity_at: float | None = None
    title: str | None = None
    doing: str | None = None
    model: str | None = None
    has_error: bool = False
    summary: WorkSummary | None = None
    events: tuple[EventSummary, ...] = ()


@dataclass(slots=True)
class _SessionTrack:
    agent_key: str
    in_flight: bool = False
    last_activity_at: float | None = None
    announced: bool = False


class CodexLogAdapter:
    """Translate log summaries into ``turn`` span transitions for the store."""

    def __init__(self) -> None:
        self._tracks: dict[str, _SessionTrack] = {}

    def bind(self, session_path: str, agent_key: str) -> None:
        track = self._tracks.get(session_path)
        if track is None:
            self._tracks[session_path] = _SessionTrack(agent_key=agent_key)
        else:
            track.agent_key = agent_key

    def agent_key(self, session_path: str) -> str:
        track = self._tracks.get(session_path)
        return track.agent_key if track else f"codex:{session_path}"

    def events_for(
        self, summary: LogSummary, now: float, *, process: AgentMeta | None = None
    ) -> list[AgentEvent]:
        """Events for one tick; ``process`` carries pid-level metadata from the scan."""
        track = self._tracks.get(summary.session_path)
        if track is None:
            track = _SessionTrack(agent_key=f"codex:{summary.session_path}")
            self._tracks[summary.session_path] = track
        ts = summary.last_activity_at or summary.last_event_at or now
        meta = AgentMeta(
            identity=track.agent_key,
            session_path=summary.session_path,
            title=summary.title,
            doing=summary.doing,
            summary=summary.summary,
            model=summary.model,
            has_error=summary.has_error,
        )
        meta.merge(process)

        def make(event_type: EventType, span: bool = False) -> AgentEvent:
            return AgentEvent(
                type=event_type,
                agent_key=track.agent_key,
                ts=ts,
                meta=meta,
                span_id=TURN_SPAN if span else None,
                span_kind=SpanKind.TURN if span else None,
            )

        events: list[AgentEvent] = []
        if not track.announced:
            events.append(make(EventType.PRESENCE_UP))
            track.announced = True
        # Metadata refresh even while idle.
        events.append(make(EventType.SPAN_PROGRESS))

        is_in_flight = bool(summary.in_flight)
        if is_in_flight and not track.in_flight:
            events.append(make(EventType.SPAN_START, span=True))
        elif not is_in_flight and track.in_flight:
            events.append(make(EventType.SPAN_END, span=True))
        elif (
            is_in_flight
            and summary.last_activity_at is not None
            and summary.last_activity_at != track.last_activity_at
        ):
            events.append(make(EventType.SPAN_PROGRESS, span=True))

        track.in_flight = is_in_flight
        track.last_activity_at = summary.last_activity_at
        return events

    def forget(self, session_path: str, ts: float) -> list[AgentEvent]:
        track = self._tracks.pop(session_path, None)
        if track is None or not track.announced:
            return []
        return [AgentEvent(type=EventType.PRESENCE_DOWN, agent_key=track.agent_key, ts=ts)]

    def tracked_paths(self) -> set[str]:
        return set(self._tracks)


def codex_notify_store_events(
    event: CodexNotifyEvent, state: CodexThreadState | None
) -> list[AgentEvent]:
    """Store events for a notify hook; the thread id doubles as the session id."""
    key = f"codex:{event.thread_id}"
    meta = AgentMeta(kind=AgentKind.EXEC, identity=key)

    def make(event_type: EventType, summary: str | None = None) -> AgentEvent:
        return AgentEvent(
            type=event_type,
            agent_key=key,
            ts=event.ts,
            meta=meta,
            span_id=TURN_SPAN,
            span_kind=SpanKind.TURN,
            summary=summary,
        )

    if event.type in ("thread.started", "turn.started", "item.started"):
        return [make(EventType.SPAN_START, summary=event.type)]
    if event.type == "item.completed":
        if state is not None and state.in_flight:
            return [make(EventType.SPAN_PROGRESS)]
        return [make(EventType.SPAN_END)]
    if event.type == "agent-turn-complete":
        return [make(EventType.SPAN_END, summary="turn complete")]
    return []
