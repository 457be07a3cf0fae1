"""Tests for the monitor daemon loop, hook intake and snapshot merge."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

from agentpulse.config import MonitorConfig
from agentpulse.daemon import MonitorDaemon, build_opencode_api, write_snapshot_file
from agentpulse.inbox import HookInbox
from agentpulse.providers.codex import LogSummary
from agentpulse.scan import ProcessInfo, StaticProcessSource
from agentpulse.types import AgentKind, AgentSnapshot, AgentState, SnapshotPayload

NOW = 1_700_000_000_000.0


class _FakeLogFeed:
    def __init__(self, summary: LogSummary | None) -> None:
        self.summary = summary

    def summarize(self, session_path: str) -> LogSummary | None:
        return self.summary


def _make_daemon(tmp_path: Path, processes: list[ProcessInfo] | None = None) -> MonitorDaemon:
    cwd = str(tmp_path / "work")
    home = tmp_path / "codex-home"
    sessions = home / "sessions"
    sessions.mkdir(parents=True)
    rollout = sessions / "rollout-sess-1.jsonl"
    rollout.write_text(
        json.dumps({"type": "session_meta", "payload": {"id": "sess-1", "cwd": cwd}}) + "\n",
        encoding="utf-8",
    )
    os.utime(rollout, ((NOW - 1_000) / 1000, (NOW - 1_000) / 1000))

    config = MonitorConfig()
    config.codex.home = str(home)
    config.scan.inbox_file = str(tmp_path / "inbox.jsonl")
    config.scan.snapshot_file = str(tmp_path / "out" / "snapshot.json")
    config.scan.poll_ms = 50
    config.activity.idle_hold_ms = 10
    config.opencode.api_enabled = False
    config.opencode.events_enabled = False

    daemon = MonitorDaemon(config, clock=lambda: NOW)
    daemon.scanner.process_source = StaticProcessSource(processes or [])
    return daemon


def _codex_proc(tmp_path: Path, pid: int = 10) -> ProcessInfo:
    return ProcessInfo(
        pid=pid, cmd="codex", name="codex", cwd=str(tmp_path / "work"), started_at=NOW - 60_000
    )


def test_write_snapshot_file_replaces_atomically(tmp_path):
    target = tmp_path / "deep" / "snap.json"
    agent = AgentSnapshot(id="1", pid=1, kind=AgentKind.TUI, state=AgentState.IDLE)
    write_snapshot_file(target, SnapshotPayload(ts=1.0, agents=(agent,)))
    write_snapshot_file(target, SnapshotPayload(ts=2.0))

    assert json.loads(target.read_text(encoding="utf-8")) == {"ts": 2.0, "agents": []}
    assert [p.name for p in target.parent.iterdir()] == ["snap.json"]


@pytest.mark.asyncio
async def test_claude_hook_reaches_store_and_listeners(tmp_path):
    daemon = _make_daemon(tmp_path)
    seen: list[SnapshotPayload] = []
    daemon.add_listener(seen.append)

    accepted = daemon.handle_hook(
        "claude", {"hook_event_name": "UserPromptSubmit", "session_id": "c1"}
    )
    await asyncio.sleep(0)

    assert accepted is True
    assert seen[-1].agents[0].identity == "claude:c1"
    assert seen[-1].agents[0].state is AgentState.ACTIVE
    daemon.close()


@pytest.mark.asyncio
async def test_unknown_or_invalid_hooks_are_dropped(tmp_path):
    daemon = _make_daemon(tmp_path)
    assert daemon.handle_hook("cursor", {"anything": 1}) is False
    assert daemon.handle_hook("claude", {"session_id": "c1"}) is False
    assert daemon.handle_hook("codex", {"type": "turn.started"}) is False
    daemon.close()


@pytest.mark.asyncio
async def test_drain_inbox_applies_queued_hooks(tmp_path):
    daemon = _make_daemon(tmp_path)
    inbox = HookInbox(daemon.config.scan.inbox_file)
    inbox.append("codex", {"type": "turn.started", "thread_id": "sess-1"}, received_at=NOW)
    inbox.append("nobody", {}, received_at=NOW)

    assert daemon.drain_inbox(NOW) == 1
    assert daemon.codex_threads.get("sess-1").in_flight is True
    assert daemon.drain_inbox(NOW) == 0
    daemon.close()


@pytest.mark.asyncio
async def test_tick_merges_scan_and_log_views(tmp_path):
    daemon = _make_daemon(tmp_path, [_codex_proc(tmp_path)])
    daemon.scanner.log_feed = _FakeLogFeed(
        LogSummary(session_path="unused", in_flight=True, last_activity_at=NOW - 100)
    )

    payload = await daemon.tick()

    [agent] = payload.agents
    assert agent.identity == "codex:sess-1"
    assert agent.state is AgentState.ACTIVE
    assert agent.pid == 10
    assert daemon.latest.agents[0].identity == "codex:sess-1"
    written = json.loads(Path(daemon.config.scan.snapshot_file).read_text(encoding="utf-8"))
    assert [a["identity"] for a in written["agents"]] == ["codex:sess-1"]
    daemon.close()


@pytest.mark.asyncio
async def test_exited_session_leaves_store(tmp_path):
    daemon = _make_daemon(tmp_path, [_codex_proc(tmp_path)])
    daemon.scanner.log_feed = _FakeLogFeed(LogSummary(session_path="unused"))
    await daemon.tick()
    assert daemon.store.keys() == ["codex:sess-1"]

    daemon.scanner.process_source = StaticProcessSource([])
    payload = await daemon.tick()

    assert payload.agents == ()
    assert daemon.store.keys() == []
    daemon.close()


@pytest.mark.asyncio
async def test_notify_hook_marks_scanned_process_in_flight(tmp_path):
    daemon = _make_daemon(tmp_path, [_codex_proc(tmp_path)])
    daemon.handle_hook("codex", {"type": "turn.started", "thread_id": "sess-1"}, now=NOW - 10)

    payload = await daemon.tick()

    [agent] = payload.agents
    assert agent.identity == "codex:sess-1"
    assert agent.state is AgentState.ACTIVE
    daemon.close()


@pytest.mark.asyncio
async def test_run_stops_after_max_ticks(tmp_path):
    daemon = _make_daemon(tmp_path)
    seen: list[SnapshotPayload] = []
    daemon.add_listener(seen.append)

    await asyncio.wait_for(daemon.run(max_ticks=2), timeout=5)

    assert len(seen) >= 2
    assert len(daemon.store) == 0


@pytest.mark.asyncio
async def test_failed_tick_does_not_end_loop(tmp_path):
    daemon = _make_daemon(tmp_path)
    calls = 0

    def _scan(now):
        nonlocal calls
        calls += 1
        raise RuntimeError("scan exploded")

    daemon.scanner.scan = _scan

    await asyncio.wait_for(daemon.run(max_ticks=2), timeout=5)

    assert calls == 2


class _BrokenSource:
    def list_processes(self) -> list[ProcessInfo]:
        raise OSError("proc unavailable")


class _FakeEventStream:
    def __init__(self, events: list[dict]) -> None:
        self.events = events
        self.on_event = None
        self.closed = False

    async def run(self) -> None:
        for raw in self.events:
            self.on_event(raw)
        await asyncio.Event().wait()

    def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_hook_agents_without_a_process_expire(tmp_path):
    daemon = _make_daemon(tmp_path)
    daemon.handle_hook("codex", {"type": "turn.started", "thread_id": "t-1"})
    daemon.handle_hook("codex", {"type": "agent-turn-complete", "thread_id": "t-1"})
    daemon.handle_hook("claude", {"hook_event_name": "UserPromptSubmit", "session_id": "c1"})

    first = await daemon.tick()
    assert {a.identity for a in first.agents} == {"codex:t-1", "claude:c1"}

    second = await daemon.tick()
    assert second.agents == ()
    assert daemon.store.keys() == []

    daemon.handle_hook("codex", {"type": "turn.started", "thread_id": "t-1"})
    assert daemon.store.keys() == ["codex:t-1"]
    daemon.close()


@pytest.mark.asyncio
async def test_claimed_hook_agent_survives_ticks(tmp_path):
    daemon = _make_daemon(tmp_path, [_codex_proc(tmp_path)])
    daemon.handle_hook("codex", {"type": "turn.started", "thread_id": "sess-1"}, now=NOW - 10)

    for _ in range(3):
        await daemon.tick()

    assert daemon.store.keys() == ["codex:sess-1"]
    daemon.close()


@pytest.mark.asyncio
async def test_failed_listing_keeps_hook_agents(tmp_path):
    daemon = _make_daemon(tmp_path)
    daemon.handle_hook("claude", {"hook_event_name": "SessionStart", "session_id": "c1"})
    daemon.scanner.process_source = _BrokenSource()

    for _ in range(3):
        await daemon.tick()

    assert daemon.store.keys() == ["claude:c1"]
    daemon.close()


@pytest.mark.asyncio
async def test_run_follows_event_stream_and_closes_it(tmp_path):
    daemon = _make_daemon(tmp_path)
    stream = _FakeEventStream(
        [{"type": "tool.execute.before", "properties": {"sessionID": "s1"}}]
    )
    stream.on_event = daemon.opencode_events.handle
    daemon.opencode_stream = stream
    seen: list[SnapshotPayload] = []
    daemon.add_listener(seen.append)

    await asyncio.wait_for(daemon.run(max_ticks=2), timeout=5)

    assert any(a.identity == "opencode:s1" for p in seen for a in p.agents)
    assert stream.closed is True


def test_opencode_feeds_follow_config(tmp_path):
    daemon = _make_daemon(tmp_path)
    assert daemon.opencode_stream is None
    assert daemon.scanner.opencode_api is None

    config = MonitorConfig()
    config.opencode.port = 5123
    feed = build_opencode_api(config)
    assert feed is not None
    assert feed.base_url == "http://127.0.0.1:5123"
