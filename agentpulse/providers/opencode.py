"""Server-sent event adapter for the server-mode agent.

The server streams loosely-typed JSON events. :class:`OpenCodeEventAdapter`
maps them onto store events (a single ``turn`` span per session) and keeps a
per-session in-flight signal that the scanner fuses with the HTTP API view.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..core.events import AgentEvent, AgentMeta, EventType, SpanKind
from ..core.store import AgentStateStore
from ..reconcile.inflight import InFlightSignal
from ..types import AgentKind

logger = logging.getLogger(__name__)

TURN_SPAN = "turn"
DEFAULT_IDLE_DEBOUNCE_MS = 200

_TERMINAL_RE = re.compile(
    r"^(response|run)\.(completed|failed|errored|canceled|cancelled|aborted|interrupted|stopped)$"
)
_DELTA_RE = re.compile(
    r"response\.((output_text|function_call_arguments|content_part|text)\.delta)$"
)
_IDLE_STATUS_RE = re.compile(r"idle|stopped|paused")


def _dig(raw: Any, *path: str) -> Any:
    current = raw
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def parse_timestamp(value: Any) -> float | None:
    """Epoch seconds or milliseconds, or an ISO string, to epoch milliseconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) * 1000 if value < 100_000_000_000 else float(value)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return None
    return None


def event_session_id(raw: Any) -> str | None:
    value = _first(
        _dig(raw, "sessionId"),
        _dig(raw, "session_id"),
        _dig(raw, "session", "id"),
        _dig(raw, "session", "sessionId"),
        _dig(raw, "properties", "sessionId"),
        _dig(raw, "properties", "sessionID"),
        _dig(raw, "properties", "session_id"),
        _dig(raw, "properties", "info", "id"),
    )
    return value if isinstance(value, str) and value else None


def event_type(raw: Any) -> str:
    value = _first(
        _dig(raw, "type"),
        _dig(raw, "event"),
        _dig(raw, "name"),
        _dig(raw, "kind"),
        _dig(raw, "properties", "type"),
    )
    return value.lower() if isinstance(value, str) else ""


def _role(raw: Any) -> str:
    value = _first(
        _dig(raw, "role"),
        _dig(raw, "message", "role"),
        _dig(raw, "properties", "role"),
        _dig(raw, "properties", "info", "role"),
        _dig(raw, "message", "author", "role"),
        _dig(raw, "author", "role"),
    )
    return value.lower() if isinstance(value, str) else ""


def _is_assistant(raw: Any) -> bool:
    return _role(raw) in ("assistant", "agent")


def _session_meta(raw: Any, agent_key: str) -> AgentMeta:
    session = _first(
        _dig(raw, "session"), _dig(raw, "properties", "session"), _dig(raw, "data", "session")
    )
    session = session if isinstance(session, dict) else {}
    title = _first(session.get("title"), session.get("name"), _dig(raw, "title"))
    cwd = _first(
        session.get("cwd"), session.get("directory"), _dig(raw, "cwd"), _dig(raw, "directory")
    )
    model = _first(session.get("model"), _dig(raw, "model"))
    pid = _first(session.get("pid"), _dig(raw, "pid"))
    return AgentMeta(
        kind=AgentKind.OPENCODE_TUI,
        identity=agent_key,
        title=title if isinstance(title, str) else None,
        cwd=cwd if isinstance(cwd, str) else None,
        model=model if isinstance(model, str) else None,
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
    )


@dataclass(slots=True)
class _SessionSignal:
    in_flight: bool = False
    last_activity_at: float | None = None


class OpenCodeEventAdapter:
    """Feed raw server events into the store with a short idle debounce."""

    def __init__(
        self,
        store: AgentStateStore,
        *,
        idle_debounce_ms: float = DEFAULT_IDLE_DEBOUNCE_MS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._idle_debounce_ms = idle_debounce_ms
        self._clock = clock or (lambda: time.time() * 1000)
        self._active: set[str] = set()
        self._idle_timers: dict[str, asyncio.TimerHandle] = {}
        self._signals: dict[str, _SessionSignal] = {}

    def handle(self, raw: Any) -> bool:
        """Apply one raw event; returns False when it was dropped."""
        session_id = event_session_id(raw)
        if session_id is None:
            return False
        key = f"opencode:{session_id}"
        kind = event_type(raw)
        ts = parse_timestamp(
            _first(
                _dig(raw, "ts"),
                _dig(raw, "timestamp"),
                _dig(raw, "time"),
                _dig(raw, "created_at"),
                _dig(raw, "createdAt"),
                _dig(raw, "properties", "time"),
                _dig(raw, "properties", "timestamp"),
            )
        )
        if ts is None:
            ts = self._clock()
        meta = _session_meta(raw, key)
        signal = self._signals.setdefault(session_id, _SessionSignal())

        if kind == "session.created":
            self._ingest(EventType.PRESENCE_UP, key, ts, meta)
            return True
        if kind == "session.deleted":
            self._clear_idle(key)
            self._active.discard(key)
            self._signals.pop(session_id, None)
            self._ingest(EventType.PRESENCE_DOWN, key, ts, meta)
            return True
        if kind == "permission.asked":
            self._clear_idle(key)
            self._active.discard(key)
            self._mark(signal, False, ts)
            self._ingest(EventType.BLOCKED, key, ts, meta, summary="permission asked")
            return True
        if kind == "permission.replied":
            self._ingest(EventType.UNBLOCKED, key, ts, meta)
            return True
        if _TERMINAL_RE.match(kind):
            self._clear_idle(key)
            self._active.discard(key)
            self._mark(signal, False, ts)
            self._ingest(EventType.SPAN_END, key, ts, meta, span=True, summary=kind)
            return True
        status = _first(
            _dig(raw, "status"), _dig(raw, "state"), _dig(raw, "properties", "status", "type")
        )
        status = status.lower() if isinstance(status, str) else ""
        if kind == "session.idle" or (
            kind.startswith("session.status") and _IDLE_STATUS_RE.search(status)
        ):
            self._mark(signal, False, ts)
            self._schedule_idle(key, ts, meta)
            return True

        if kind.startswith("message.") and not _is_assistant(raw):
            return False
        is_assistant_part = kind == "message.part.updated" and _is_assistant(raw)
        if kind == "tool.execute.before" or is_assistant_part or _DELTA_RE.search(kind):
            self._mark(signal, True, ts)
            self._start(key, ts, meta)
            return True
        if kind == "tool.execute.after" and key in self._active:
            self._mark(signal, True, ts)
            self._ingest(EventType.SPAN_PROGRESS, key, ts, meta, span=True)
            return True
        return False

    def signal(self, session_id: str) -> InFlightSignal | None:
        entry = self._signals.get(session_id)
        if entry is None:
            return None
        return InFlightSignal(entry.in_flight, entry.last_activity_at)

    def close(self) -> None:
        for handle in self._idle_timers.values():
            handle.cancel()
        self._idle_timers.clear()
        self._active.clear()

    @staticmethod
    def _mark(signal: _SessionSignal, in_flight: bool, ts: float) -> None:
        signal.in_flight = in_flight
        if signal.last_activity_at is None or ts > signal.last_activity_at:
            signal.last_activity_at = ts

    def _ingest(
        self,
        event_type: EventType,
        key: str,
        ts: float,
        meta: AgentMeta,
        *,
        span: bool = False,
        summary: str | None = None,
    ) -> None:
        self._store.ingest(
            AgentEvent(
                type=event_type,
                agent_key=key,
                ts=ts,
                meta=meta,
                span_id=TURN_SPAN if span else None,
                span_kind=SpanKind.TURN if span else None,
                summary=summary,
            )
        )

    def _start(self, key: str, ts: float, meta: AgentMeta) -> None:
        self._clear_idle(key)
        if key not in self._active:
            self._ingest(EventType.SPAN_START, key, ts, meta, span=True)
            self._active.add(key)
        self._ingest(EventType.SPAN_PROGRESS, key, ts, meta, span=True)

    def _clear_idle(self, key: str) -> None:
        handle = self._idle_timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _schedule_idle(self, key: str, ts: float, meta: AgentMeta) -> None:
        self._clear_idle(key)
        loop = asyncio.get_running_loop()
        self._idle_timers[key] = loop.call_later(
            max(self._idle_debounce_ms, 0) / 1000, self._on_idle, key, ts, meta
        )

    def _on_idle(self, key: str, ts: float, meta: AgentMeta) -> None:
        self._idle_timers.pop(key, None)
        if key not in self._active:
            return
        self._active.discard(key)
        self._ingest(EventType.SPAN_END, key, ts, meta, span=True)


def should_include_opencode_process(
    *,
    kind: AgentKind,
    api_available: bool,
    has_session: bool,
    has_event_activity: bool,
    cpu: float,
    cpu_threshold: float,
) -> bool:
    """Decide whether a detected process is worth reporting."""
    if kind in (AgentKind.OPENCODE_SERVER, AgentKind.OPENCODE_TUI, AgentKind.OPENCODE_CLI):
        return True
    if api_available:
        return has_session or has_event_activity
    if has_event_activity:
        return True
    return cpu > cpu_threshold
