from __future__ import annotations

import json
from pathlib import Path

import pytest
import typer

from agentpulse.cli import InvalidPayloadError, InvalidProviderError, render_agents_table
from agentpulse.cli.admin import hook, parse_hook_payload, show_config
from agentpulse.cli.formatting import format_age
from agentpulse.cli.monitor import scan
from agentpulse.inbox import HookInbox
from agentpulse.scan import ScanResult
from agentpulse.types import AgentKind, AgentSnapshot, AgentState, SnapshotPayload


def _use_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    inbox = tmp_path / "inbox.jsonl"
    path = tmp_path / "config.yaml"
    path.write_text(f"scan:\n  inbox_file: {inbox}\n", encoding="utf-8")
    monkeypatch.setenv("AGENTPULSE_CONFIG", str(path))
    return inbox


def _agent(pid: int, state: AgentState) -> AgentSnapshot:
    return AgentSnapshot(
        id=str(pid), pid=pid, kind=AgentKind.EXEC, state=state, title=f"agent {pid}"
    )


def test_parse_hook_payload_normalizes_claude() -> None:
    payload = parse_hook_payload(
        "Claude", '{"hookEventName": "pre_tool_use", "sessionId": "s1", "timestamp": 5}'
    )
    assert payload == {"hook_event_name": "PreToolUse", "session_id": "s1", "timestamp": 5.0}


def test_parse_hook_payload_passes_opencode_through() -> None:
    assert parse_hook_payload("opencode", '{"type": "x"}') == {"type": "x"}


@pytest.mark.parametrize(
    ("provider", "raw", "error"),
    [
        ("cursor", "{}", InvalidProviderError),
        ("claude", "   ", InvalidPayloadError),
        ("claude", "{oops", InvalidPayloadError),
        ("codex", "[1, 2]", InvalidPayloadError),
        ("codex", '{"type": "turn.started"}', InvalidPayloadError),
    ],
)
def test_parse_hook_payload_rejects_bad_input(provider: str, raw: str, error: type) -> None:
    with pytest.raises(error):
        parse_hook_payload(provider, raw)


def test_hook_command_appends_to_inbox(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    inbox_path = _use_config(monkeypatch, tmp_path)

    hook("codex", '{"type": "turn.started", "thread_id": "t1", "timestamp": 9}')

    [entry] = HookInbox(inbox_path).drain()
    assert entry.provider == "codex"
    assert entry.payload == {"type": "turn.started", "thread_id": "t1", "timestamp": 9.0}


def test_hook_command_exits_on_invalid_payload(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    inbox_path = _use_config(monkeypatch, tmp_path)

    with pytest.raises(typer.Exit) as exc_info:
        hook("claude", "not json")

    assert exc_info.value.exit_code == 1
    assert "Invalid hook payload" in capsys.readouterr().out
    assert not inbox_path.exists()


def test_config_command_prints_resolved_values(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _use_config(monkeypatch, tmp_path)
    monkeypatch.setenv("AGENTPULSE_CODEX_HOLD_MS", "1234")

    show_config()

    out = capsys.readouterr().out
    assert "# source:" in out
    assert "hold_ms: 1234.0" in out


def test_config_command_reports_missing_file(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(typer.Exit):
        show_config(config_path="/nonexistent/agentpulse.yaml")
    assert "Could not load config" in capsys.readouterr().out


def test_scan_command_emits_json(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _use_config(monkeypatch, tmp_path)

    primed: list[bool] = []

    class FakeSource:
        def list_processes(self) -> list:
            primed.append(True)
            return []

    class FakeScanner:
        def __init__(self, config: object, **kwargs: object) -> None:
            del config, kwargs
            self.process_source = FakeSource()

        def scan(self) -> ScanResult:
            assert primed, "CPU baseline must be taken before scanning"
            return ScanResult(SnapshotPayload(ts=1.0, agents=(_agent(7, AgentState.ACTIVE),)))

    monkeypatch.setattr("agentpulse.cli.monitor.AgentScanner", FakeScanner)
    monkeypatch.setattr("agentpulse.cli.monitor.CPU_SAMPLE_SECONDS", 0)

    scan(json_output=True)

    data = json.loads(capsys.readouterr().out)
    assert data["agents"][0]["pid"] == 7
    assert data["agents"][0]["state"] == "active"


def test_render_agents_table_orders_by_state() -> None:
    payload = SnapshotPayload(
        ts=10_000,
        agents=(
            _agent(3, AgentState.IDLE),
            _agent(2, AgentState.ACTIVE),
            _agent(1, AgentState.ERROR),
        ),
    )
    table = render_agents_table(payload)

    assert list(table.columns[0].cells) == ["1", "2", "3"]
    assert table.caption is None


def test_render_agents_table_empty() -> None:
    assert render_agents_table(SnapshotPayload(ts=0)).caption == "No agents detected"


@pytest.mark.parametrize(
    ("ts", "expected"),
    [(None, "-"), (9_000, "1s"), (10_000 - 130_000, "2m10s"), (10_000 - 3_900_000, "1h5m")],
)
def test_format_age(ts: float | None, expected: str) -> None:
    assert format_age(ts, 10_000) == expected
