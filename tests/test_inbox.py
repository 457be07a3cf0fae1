"""Tests for the file-based hook inbox."""

from __future__ import annotations

from agentpulse.inbox import HookInbox, InboxEntry


def test_append_then_drain_clears_queue(tmp_path):
    inbox = HookInbox(tmp_path / "nested" / "inbox.jsonl")
    inbox.append("claude", {"hook_event_name": "Stop", "session_id": "s1"}, received_at=1_000)
    inbox.append("codex", {"type": "turn.started", "thread_id": "t1"}, received_at=2_000)

    entries = inbox.drain()

    assert [(e.provider, e.received_at) for e in entries] == [("claude", 1_000), ("codex", 2_000)]
    assert entries[0].payload["session_id"] == "s1"
    assert inbox.drain() == []
    assert inbox.path.read_text(encoding="utf-8") == ""


def test_drain_missing_file(tmp_path):
    assert HookInbox(tmp_path / "absent.jsonl").drain() == []


def test_malformed_lines_are_dropped(tmp_path):
    path = tmp_path / "inbox.jsonl"
    good = InboxEntry("opencode", {"type": "session.idle"}, 5.0).to_json()
    path.write_text(
        "\n".join(["not json", '["list"]', '{"provider": 1, "payload": {}}', "", good]) + "\n",
        encoding="utf-8",
    )

    entries = HookInbox(path).drain()

    assert entries == [InboxEntry("opencode", {"type": "session.idle"}, 5.0)]


def test_from_json_defaults_bad_timestamp():
    entry = InboxEntry.from_json('{"provider": "codex", "payload": {}, "received_at": true}')
    assert entry is not None
    assert entry.received_at == 0.0
