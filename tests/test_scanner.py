"""Tests for the per-tick process scanner."""

from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path

import psutil

from agentpulse.config import MonitorConfig
from agentpulse.identity import DropReason, OpenCodeSession
from agentpulse.providers.claude import ClaudeHookEvent, ClaudeHookTracker
from agentpulse.providers.codex import LogSummary
from agentpulse.reconcile import InFlightSignal
from agentpulse.scan import (
    AgentScanner,
    CodexSessionIndex,
    OpenCodeApiSnapshot,
    ProcessInfo,
    PsutilProcessSource,
    StaticProcessSource,
    compile_process_match,
)
from agentpulse.types import AgentKind, AgentState

NOW = 1_700_000_000_000.0


class _FakeLogFeed:
    def __init__(self, summary: LogSummary | None) -> None:
        self.summary = summary
        self.calls: list[str] = []

    def summarize(self, session_path: str) -> LogSummary | None:
        self.calls.append(session_path)
        return self.summary


class _FakeApi:
    def __init__(self, snapshot: OpenCodeApiSnapshot) -> None:
        self.snapshot = snapshot

    def fetch(self) -> OpenCodeApiSnapshot:
        return self.snapshot


class _BrokenSource:
    def list_processes(self) -> list[ProcessInfo]:
        raise OSError("proc unavailable")


def _make_codex_home(tmp_path: Path, cwd: str, session_id: str = "sess-1") -> Path:
    home = tmp_path / "codex-home"
    sessions = home / "sessions" / "2024" / "01"
    sessions.mkdir(parents=True)
    rollout = sessions / f"rollout-{session_id}.jsonl"
    record = {"type": "session_meta", "payload": {"id": session_id, "cwd": cwd}}
    rollout.write_text(json.dumps(record) + "\n", encoding="utf-8")
    mtime = (NOW - 1_000) / 1000
    os.utime(rollout, (mtime, mtime))
    return home


def _codex_proc(pid: int, cwd: str, **kwargs) -> ProcessInfo:
    kwargs.setdefault("cmd", "codex")
    kwargs.setdefault("name", "codex")
    kwargs.setdefault("started_at", NOW - 60_000)
    return ProcessInfo(pid=pid, cwd=cwd, **kwargs)


def _make_scanner(tmp_path: Path, processes: list[ProcessInfo], **kwargs):
    cwd = str(tmp_path / "work")
    config = kwargs.pop("config", None) or MonitorConfig()
    source = StaticProcessSource(processes)
    scanner = AgentScanner(
        config,
        process_source=source,
        session_index=CodexSessionIndex(_make_codex_home(tmp_path, cwd)),
        **kwargs,
    )
    return scanner, source


def test_codex_process_resolves_session_by_cwd(tmp_path):
    cwd = str(tmp_path / "work")
    scanner, _ = _make_scanner(tmp_path, [_codex_proc(10, cwd)])

    result = scanner.scan(NOW)

    [agent] = result.payload.agents
    assert agent.identity == "codex:sess-1"
    assert agent.id == "10"
    assert agent.kind is AgentKind.TUI
    assert agent.state is AgentState.IDLE
    assert agent.session_path.endswith("rollout-sess-1.jsonl")
    assert result.payload.meta == {"processes": 1}
    assert 10 in scanner.codex_pins


def test_stale_pin_is_dropped_and_session_rebinds(tmp_path):
    cwd = str(tmp_path / "work")
    config = MonitorConfig()
    config.scan.stale_file_ms = 60_000
    scanner, source = _make_scanner(tmp_path, [_codex_proc(10, cwd)], config=config)
    scanner.scan(NOW)

    source.set([_codex_proc(11, cwd)])
    result = scanner.scan(NOW + 120_000)

    assert [(d.pid, d.reason) for d in result.pin_drops] == [(10, DropReason.STALE)]
    [agent] = result.payload.agents
    assert agent.pid == 11
    assert agent.identity == "codex:sess-1"


def test_second_process_in_same_cwd_is_reuse_blocked(tmp_path):
    cwd = str(tmp_path / "work")
    scanner, _ = _make_scanner(
        tmp_path,
        [_codex_proc(20, cwd, started_at=NOW - 5_000), _codex_proc(21, cwd)],
    )

    result = scanner.scan(NOW)

    identities = {agent.pid: agent.identity for agent in result.payload.agents}
    assert identities == {21: "codex:sess-1", 20: "codex:pid:20"}


def test_log_summary_drives_activity_and_is_reported(tmp_path):
    cwd = str(tmp_path / "work")
    summary = LogSummary(
        session_path="ignored",
        in_flight=True,
        last_activity_at=NOW - 100,
        title="prompt: add retries",
        doing="cmd: pytest",
    )
    feed = _FakeLogFeed(summary)
    scanner, _ = _make_scanner(tmp_path, [_codex_proc(10, cwd, cpu=0.0)], log_feed=feed)

    result = scanner.scan(NOW)

    [agent] = result.payload.agents
    assert agent.state is AgentState.ACTIVE
    assert agent.activity_reason == "in_flight"
    assert agent.title == "add retries"
    assert agent.doing == "cmd: pytest"
    assert len(feed.calls) == 1
    [logged] = result.logged_sessions
    assert logged.identity == "codex:sess-1"
    assert logged.process.pid == 10


def test_hold_memory_keeps_agent_active_then_resets_on_pid_reuse(tmp_path):
    cwd = str(tmp_path / "work")
    scanner, source = _make_scanner(tmp_path, [_codex_proc(10, cwd, cpu=50.0)])

    assert scanner.scan(NOW).payload.agents[0].activity_reason == "cpu_spike"

    source.set([_codex_proc(10, cwd, cpu=0.0)])
    assert scanner.scan(NOW + 1_000).payload.agents[0].activity_reason == "hold_active"

    source.set([_codex_proc(10, cwd, cpu=0.0, started_at=NOW + 1_500)])
    assert scanner.scan(NOW + 2_000).payload.agents[0].state is AgentState.IDLE


def test_listing_failure_keeps_state(tmp_path):
    cwd = str(tmp_path / "work")
    scanner, _ = _make_scanner(tmp_path, [_codex_proc(10, cwd)])
    scanner.scan(NOW)
    scanner.process_source = _BrokenSource()

    result = scanner.scan(NOW + 1_000)

    assert result.payload.agents == ()
    assert 10 in scanner.codex_pins


def test_opencode_server_is_its_own_agent(tmp_path):
    proc = ProcessInfo(pid=30, cmd="opencode serve --port 4096", name="opencode", cpu=80.0)
    scanner, _ = _make_scanner(tmp_path, [proc])

    [agent] = scanner.scan(NOW).payload.agents

    assert agent.identity == "opencode:server:30"
    assert agent.kind is AgentKind.OPENCODE_SERVER
    assert agent.state is AgentState.IDLE
    assert agent.activity_reason == "server"


def test_opencode_session_from_api(tmp_path):
    cwd = str(tmp_path / "work")
    api = _FakeApi(
        OpenCodeApiSnapshot(
            reachable=True,
            sessions=[OpenCodeSession(id="s1", directory=cwd, title="refactor", updated_at=NOW)],
            in_flight={"s1": InFlightSignal(True, NOW - 50)},
        )
    )
    proc = ProcessInfo(pid=31, cmd="opencode", name="opencode", cwd=cwd)
    scanner, _ = _make_scanner(tmp_path, [proc], opencode_api=api)

    [agent] = scanner.scan(NOW).payload.agents

    assert agent.identity == "opencode:s1"
    assert agent.state is AgentState.ACTIVE
    assert agent.title == "refactor"
    assert scanner.opencode_pins.get(31).session_id == "s1"


def test_claude_hooks_attach_by_cwd(tmp_path):
    cwd = str(tmp_path / "work")
    hooks = ClaudeHookTracker()
    hooks.handle(
        ClaudeHookEvent.from_payload(
            {
                "hook_event_name": "UserPromptSubmit",
                "session_id": "c1",
                "cwd": cwd,
                "timestamp": NOW - 100,
            }
        )
    )
    with_hooks = ProcessInfo(pid=40, cmd="claude", name="claude", cwd=cwd, started_at=NOW - 1e6)
    without = ProcessInfo(pid=41, cmd="claude", name="claude", cwd="/elsewhere", cpu=5.0)
    scanner, _ = _make_scanner(tmp_path, [with_hooks, without], claude_hooks=hooks)

    agents = {agent.pid: agent for agent in scanner.scan(NOW).payload.agents}

    assert agents[40].identity == "claude:c1"
    assert agents[40].state is AgentState.ACTIVE
    # Below the terminal CPU threshold and no hooks: idle.
    assert agents[41].identity == "claude:pid:41"
    assert agents[41].state is AgentState.IDLE


def test_compile_process_match_ignores_invalid_pattern():
    assert compile_process_match("(") is None
    assert compile_process_match(None) is None
    assert compile_process_match("agent").search("my-agent")


class _FakePsutilProcess:
    def __init__(self, pid: int, cmdline: list[str], name: str) -> None:
        self.info = {"pid": pid, "ppid": 1, "name": name, "cmdline": cmdline}
        self.enriched = False

    def is_running(self) -> bool:
        return True

    def oneshot(self):
        self.enriched = True
        return contextlib.nullcontext()

    def cpu_percent(self, interval=None) -> float:
        return 4.0

    def memory_percent(self) -> float:
        return 0.5

    def create_time(self) -> float:
        return (NOW - 60_000) / 1000

    def cwd(self) -> str:
        return "/repo"

    def open_files(self) -> list:
        return []


def test_default_process_source_only_enriches_agent_processes(tmp_path, monkeypatch):
    agent = _FakePsutilProcess(11, ["codex", "exec", "fix the build"], "codex")
    editor = _FakePsutilProcess(12, ["vim", "notes.txt"], "vim")
    monkeypatch.setattr(psutil, "process_iter", lambda attrs=None: iter([agent, editor]))
    config = MonitorConfig()
    config.codex.home = str(tmp_path / "codex-home")
    scanner = AgentScanner(config)

    assert isinstance(scanner.process_source, PsutilProcessSource)
    [info] = scanner.process_source.list_processes()

    assert info.pid == 11
    assert info.cwd == "/repo"
    assert agent.enriched is True
    assert editor.enriched is False


def test_is_agent_process_honours_process_match(tmp_path):
    config = MonitorConfig()
    config.scan.process_match = r"my-agent"
    scanner, _ = _make_scanner(tmp_path, [], config=config)

    assert scanner.is_agent_process("/opt/bin/my-agent --serve", "my-agent") is True
    assert scanner.is_agent_process("vim notes.txt", "vim") is False


def test_failed_listing_is_flagged(tmp_path):
    scanner, _ = _make_scanner(tmp_path, [])
    scanner.process_source = _BrokenSource()

    result = scanner.scan(NOW)

    assert result.listed is False
    assert result.claimed_identities() == set()
