"""Event-sourced runtime store for logical agents.

The store is the only writer of :class:`AgentRuntimeState`. Adapters submit
:class:`AgentEvent` values through :meth:`AgentStateStore.ingest`; the store
keeps span bookkeeping, runs the idle-debounce and stale-span timers on the
event loop, and publishes a coalesced :class:`SnapshotPayload` to listeners.

Timer handles live inside each key's record and are cancelled and replaced on
every event that affects them. Callbacks re-check that the record they were
scheduled for is still the live one, so a timer that races a ``presence.down``
or a newer event is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable

from ..types import EventSummary, SnapshotPayload
from .events import AgentEvent, AgentRuntimeState, EventType, Span, SpanKind

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SnapshotPayload], None]

DEFAULT_IDLE_HOLD_MS = 200
DEFAULT_STALE_SPAN_MS = 15_000
MAX_RECENT_EVENTS = 20


def _now_ms() -> float:
    return time.time() * 1000


class AgentStateStore:
    """Single serialized entry point for agent lifecycle events.

    ``ingest`` must run on the store's event loop; other threads use
    ``ingest_threadsafe``. The loop is bound lazily on first use when it is not
    passed in.
    """

    def __init__(
        self,
        *,
        idle_hold_ms: float = DEFAULT_IDLE_HOLD_MS,
        stale_span_ms: float = DEFAULT_STALE_SPAN_MS,
        clock: Callable[[], float] = _now_ms,
        loop: asyncio.AbstractEventLoop | None = None,
        max_recent_events: int = MAX_RECENT_EVENTS,
    ) -> None:
        self._idle_hold_ms = idle_hold_ms
        self._stale_span_ms = stale_span_ms
        self._clock = clock
        self._loop = loop
        self._max_recent = max_recent_events
        self._states: dict[str, AgentRuntimeState] = {}
        self._listeners: list[SnapshotListener] = []
        self._lock = threading.RLock()
        self._emit_pending = False

    # --- listeners ---

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _remove() -> None:
            self.remove_listener(listener)

        return _remove

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- ingestion ---

    def ingest(self, event: AgentEvent) -> None:
        loop = self._bind_loop()
        with self._lock:
            self._apply(event, loop)

    def ingest_many(self, events: list[AgentEvent]) -> None:
        loop = self._bind_loop()
        with self._lock:
            for event in events:
                self._apply(event, loop)

    def ingest_threadsafe(self, event: AgentEvent) -> None:
        if self._loop is None:
            raise RuntimeError("store is not bound to an event loop yet")
        self._loop.call_soon_threadsafe(self.ingest, event)

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _apply(self, event: AgentEvent, loop: asyncio.AbstractEventLoop) -> None:
        key = event.agent_key
        state = self._states.get(key)

        if event.type is EventType.PRESENCE_DOWN:
            if state is not None:
                state.cancel_timers()
                del self._states[key]
                self._schedule_emit(loop)
            return

        if state is None:
            # Any event for an unseen key brings the agent into existence.
            state = AgentRuntimeState(key=key, presence_up=True)
            self._states[key] = state

        state.touch(event.ts)
        state.meta.merge(event.meta)
        self._record(state, event)

        emit_now = True
        if event.type is EventType.SPAN_START:
            span_id = event.resolved_span_id
            span = state.spans.get(span_id)
            if span is None:
                state.spans[span_id] = Span(
                    kind=event.span_kind or SpanKind.TURN,
                    started_at=event.ts,
                    last_progress_at=event.ts,
                )
            elif event.ts > span.last_progress_at:
                span.last_progress_at = event.ts
            state.cancel_idle()
            self._restart_stale(state, loop)
        elif event.type is EventType.SPAN_PROGRESS:
            if event.span_id:
                targets = [state.spans[event.span_id]] if event.span_id in state.spans else []
            else:
                targets = list(state.spans.values())
            advanced = False
            for span in targets:
                if event.ts > span.last_progress_at:
                    span.last_progress_at = event.ts
                    advanced = True
            # A replayed progress timestamp does not count as liveness.
            if advanced:
                self._restart_stale(state, loop)
        elif event.type is EventType.SPAN_END:
            state.spans.pop(event.resolved_span_id, None)
            if state.spans:
                self._restart_stale(state, loop)
            else:
                # Idle is published by the debounce timer, not here.
                state.cancel_stale()
                self._schedule_idle(state, loop)
                emit_now = False
        elif event.type is EventType.BLOCKED:
            state.blocked = True
            state.spans.clear()
            state.cancel_stale()
            self._schedule_idle(state, loop)
            emit_now = False
        elif event.type is EventType.UNBLOCKED:
            state.blocked = False
            if not state.spans:
                state.cancel_idle()

        if emit_now:
            self._schedule_emit(loop)

    def _record(self, state: AgentRuntimeState, event: AgentEvent) -> None:
        if not event.summary:
            return
        state.recent.append(
            EventSummary(
                ts=event.ts,
                type=str(event.type),
                summary=event.summary,
                is_error=bool(event.meta and event.meta.has_error),
            )
        )
        if len(state.recent) > self._max_recent:
            del state.recent[: len(state.recent) - self._max_recent]

    # --- timers ---

    def _schedule_idle(self, state: AgentRuntimeState, loop: asyncio.AbstractEventLoop) -> None:
        state.cancel_idle()
        state.idle_timer = loop.call_later(
            max(self._idle_hold_ms, 0) / 1000, self._on_idle, state.key, state
        )

    def _restart_stale(self, state: AgentRuntimeState, loop: asyncio.AbstractEventLoop) -> None:
        state.cancel_stale()
        if self._stale_span_ms <= 0:
            return
        state.stale_timer = loop.call_later(
            self._stale_span_ms / 1000, self._on_stale, state.key, state
        )

    def _on_idle(self, key: str, state: AgentRuntimeState) -> None:
        with self._lock:
            if self._states.get(key) is not state:
                return
            state.idle_timer = None
            if state.spans and not state.blocked:
                return
            self._schedule_emit(self._bind_loop())

    def _on_stale(self, key: str, state: AgentRuntimeState) -> None:
        with self._lock:
            if self._states.get(key) is not state:
                return
            state.stale_timer = None
            if not state.spans:
                return
            logger.debug("Clearing %d stale span(s) for %s", len(state.spans), key)
            state.spans.clear()
            state.cancel_idle()
            self._schedule_emit(self._bind_loop())

    # --- emission ---

    def _schedule_emit(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._emit_pending:
            return
        self._emit_pending = True
        loop.call_soon(self._flush)

    def _flush(self) -> None:
        with self._lock:
            self._emit_pending = False
            payload = self._build_payload()
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.debug("Snapshot listener %r failed", listener, exc_info=True)

    def _build_payload(self) -> SnapshotPayload:
        agents = tuple(state.to_snapshot() for _, state in sorted(self._states.items()))
        return SnapshotPayload(ts=self._clock(), agents=agents)

    # --- queries ---

    def get_snapshot(self) -> SnapshotPayload:
        with self._lock:
            return self._build_payload()

    def get_state(self, key: str) -> AgentRuntimeState | None:
        with self._lock:
            return self._states.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._states)

    def close(self) -> None:
        """Cancel every pending timer and drop all state."""
        with self._lock:
            for state in self._states.values():
                state.cancel_timers()
            self._states.clear()
            self._listeners.clear()

    def __len__(self) -> int:
        return len(self._states)
