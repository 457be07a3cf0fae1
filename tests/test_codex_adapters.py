"""Tests for notify-hook tracking and log-summary span translation."""

from __future__ import annotations

from agentpulse.core import AgentMeta, EventType
from agentpulse.providers.codex import (
    CodexLogAdapter,
    CodexNotifyEvent,
    CodexThreadTracker,
    LogSummary,
    codex_notify_store_events,
)

PATH = "/home/u/.codex/sessions/rollout-1.jsonl"


def _notify(event_type: str, ts: float, **extra) -> CodexNotifyEvent:
    payload = {"type": event_type, "thread-id": "t1", "timestamp": ts}
    payload.update(extra)
    event = CodexNotifyEvent.from_payload(payload)
    assert event is not None
    return event


def test_notify_payload_spellings():
    nested = CodexNotifyEvent.from_payload(
        {"event": "turn.started", "thread": {"id": "t9"}, "turn": {"index": 3}}, now=50.0
    )
    assert nested is not None
    assert (nested.thread_id, nested.turn_id, nested.ts) == ("t9", "3", 50.0)
    assert CodexNotifyEvent.from_payload({"type": "turn.started"}) is None
    assert CodexNotifyEvent.from_payload({"type": "", "threadId": "t"}) is None


def test_thread_tracker_items_keep_turn_in_flight():
    tracker = CodexThreadTracker()
    tracker.handle(_notify("item.started", 1_000, turnId="a"))
    tracker.handle(_notify("item.started", 1_100, turnId="b"))

    partial = tracker.handle(_notify("item.completed", 1_200, turnId="a"))
    assert partial.in_flight is True
    done = tracker.handle(_notify("item.completed", 1_300, turnId="b"))
    assert done.in_flight is False


def test_turn_complete_clears_thread():
    tracker = CodexThreadTracker()
    tracker.handle(_notify("thread.started", 1_000))
    state = tracker.handle(_notify("agent-turn-complete", 2_000))
    assert state.in_flight is False
    assert state.last_activity_at == 2_000
    assert tracker.get("t1") is state


def test_unknown_notify_leaves_state_unchanged():
    tracker = CodexThreadTracker()
    assert tracker.handle(_notify("weird", 1_000)) is None
    assert len(tracker) == 0


def test_notify_store_events():
    tracker = CodexThreadTracker()
    start = _notify("turn.started", 1_000)
    events = codex_notify_store_events(start, tracker.handle(start))
    assert [(e.type, e.agent_key, e.span_id) for e in events] == [
        (EventType.SPAN_START, "codex:t1", "turn")
    ]

    done = _notify("agent-turn-complete", 2_000)
    assert [e.type for e in codex_notify_store_events(done, tracker.handle(done))] == [
        EventType.SPAN_END
    ]


def test_log_adapter_emits_span_transitions():
    adapter = CodexLogAdapter()
    adapter.bind(PATH, "codex:sess-1")

    first = adapter.events_for(
        LogSummary(session_path=PATH, in_flight=True, last_activity_at=1_000), 1_000
    )
    assert [e.type for e in first] == [
        EventType.PRESENCE_UP,
        EventType.SPAN_PROGRESS,
        EventType.SPAN_START,
    ]
    assert all(e.agent_key == "codex:sess-1" for e in first)

    progressed = adapter.events_for(
        LogSummary(session_path=PATH, in_flight=True, last_activity_at=1_500), 1_500
    )
    assert [(e.type, e.span_id) for e in progressed] == [
        (EventType.SPAN_PROGRESS, None),
        (EventType.SPAN_PROGRESS, "turn"),
    ]

    ended = adapter.events_for(LogSummary(session_path=PATH, in_flight=False), 2_000)
    assert [e.type for e in ended] == [EventType.SPAN_PROGRESS, EventType.SPAN_END]
    assert ended[-1].ts == 2_000


def test_log_adapter_merges_process_meta():
    adapter = CodexLogAdapter()
    events = adapter.events_for(
        LogSummary(session_path=PATH, title="from log"),
        1_000,
        process=AgentMeta(pid=42, cpu=3.5),
    )
    meta = events[0].meta
    assert (meta.pid, meta.cpu, meta.title) == (42, 3.5, "from log")
    assert events[0].agent_key == f"codex:{PATH}"


def test_forget_only_announced_sessions():
    adapter = CodexLogAdapter()
    adapter.bind(PATH, "codex:sess-1")
    assert adapter.forget(PATH, 1_000) == []

    adapter.bind(PATH, "codex:sess-1")
    adapter.events_for(LogSummary(session_path=PATH), 1_000)
    assert adapter.tracked_paths() == {PATH}
    events = adapter.forget(PATH, 2_000)
    assert [(e.type, e.agent_key) for e in events] == [
        (EventType.PRESENCE_DOWN, "codex:sess-1")
    ]
    assert adapter.tracked_paths() == set()
