"""Tests for the priority-ordered activity derivation."""

from __future__ import annotations

import math

import pytest

from agentpulse.activity import (
    ActivityContext,
    CpuSustainTracker,
    derive_claude_state,
    derive_opencode_state,
    derive_state,
    is_within_window,
)
from agentpulse.types import AgentState

NOW = 100_000.0


def _ctx(**kwargs) -> ActivityContext:
    kwargs.setdefault("now", NOW)
    return ActivityContext(**kwargs)


@pytest.mark.parametrize(
    "evidence",
    [
        {},
        {"in_flight": True},
        {"cpu": 99.0},
        {"last_activity_at": NOW, "event_window_ms": 5_000},
        {"previous_active_at": NOW, "hold_ms": 3_000},
        {"strict_in_flight": True, "in_flight": True},
    ],
)
def test_error_beats_every_other_signal(evidence):
    result = derive_state(_ctx(has_error=True, **evidence))
    assert result.state is AgentState.ERROR
    assert result.reason == "error"


def test_no_evidence_is_idle_no_signal():
    result = derive_state(_ctx())
    assert result.state is AgentState.IDLE
    assert result.reason == "no_signal"
    assert result.last_active_at is None


def test_hold_window_is_inclusive_at_boundary():
    at_boundary = derive_state(_ctx(previous_active_at=NOW - 3_000, hold_ms=3_000))
    past_boundary = derive_state(_ctx(previous_active_at=NOW - 3_001, hold_ms=3_000))

    assert at_boundary.state is AgentState.ACTIVE
    assert at_boundary.reason == "hold_active"
    assert at_boundary.last_active_at == NOW - 3_000
    assert past_boundary.state is AgentState.IDLE


def test_in_flight_decays_after_idle_window():
    fresh = derive_state(
        _ctx(in_flight=True, in_flight_idle_ms=1_000, last_in_flight_signal_at=NOW - 500)
    )
    decayed = derive_state(
        _ctx(in_flight=True, in_flight_idle_ms=1_000, last_in_flight_signal_at=NOW - 1_500)
    )
    assert fresh.reason == "in_flight"
    assert fresh.last_active_at == NOW
    assert decayed.state is AgentState.IDLE


def test_in_flight_without_idle_window_never_decays():
    result = derive_state(_ctx(in_flight=True, last_in_flight_signal_at=0))
    assert result.state is AgentState.ACTIVE


def test_cpu_spike_uses_max_of_scaled_threshold_and_minimum():
    assert derive_state(_ctx(cpu=25.0)).reason == "cpu_spike"
    assert derive_state(_ctx(cpu=24.9)).state is AgentState.IDLE
    # threshold 5 * multiplier 10 outranks the minimum of 25
    assert derive_state(_ctx(cpu=40.0, cpu_threshold=5.0)).state is AgentState.IDLE


def test_sustained_cpu_needs_duration():
    short = derive_state(_ctx(cpu=5.0, cpu_active_ms=100))
    long = derive_state(_ctx(cpu=5.0, cpu_active_ms=600))
    assert short.state is AgentState.IDLE
    assert long.reason == "sustained_cpu"


def test_recent_event_reports_event_time():
    result = derive_state(_ctx(last_activity_at=NOW - 100, event_window_ms=1_000))
    assert result.reason == "recent_event"
    assert result.last_active_at == NOW - 100


def test_zero_event_window_never_matches():
    result = derive_state(_ctx(last_activity_at=NOW, event_window_ms=0))
    assert result.state is AgentState.IDLE


def test_rule_order_prefers_in_flight_over_cpu():
    result = derive_state(_ctx(in_flight=True, cpu=99.0))
    assert result.reason == "in_flight"


def test_strict_mode_ignores_cpu_and_events():
    result = derive_state(
        _ctx(
            strict_in_flight=True,
            cpu=99.0,
            last_activity_at=NOW,
            event_window_ms=10_000,
            previous_active_at=NOW,
            hold_ms=10_000,
        )
    )
    assert result.state is AgentState.IDLE
    assert result.reason == "no_in_flight"


def test_strict_mode_grace_window():
    result = derive_state(
        _ctx(strict_in_flight=True, in_flight_grace_ms=500, last_in_flight_signal_at=NOW - 200)
    )
    assert result.state is AgentState.ACTIVE
    assert result.reason == "in_flight_grace"


def test_non_finite_numbers_bias_to_idle():
    assert derive_state(_ctx(cpu=math.nan)).state is AgentState.IDLE
    assert derive_state(_ctx(cpu=1_000.0, cpu_threshold=math.nan)).state is AgentState.IDLE
    assert (
        derive_state(_ctx(last_activity_at=NOW, event_window_ms=math.inf)).state
        is AgentState.IDLE
    )


@pytest.mark.parametrize(
    ("timestamp", "now", "window", "expected"),
    [
        (None, 10.0, 10.0, False),
        (0.0, 10.0, 10.0, True),
        (0.0, 11.0, 10.0, False),
        (0.0, 5.0, 0.0, False),
        (0.0, 1e12, -1.0, True),
        (0.0, 5.0, math.inf, False),
    ],
)
def test_is_within_window(timestamp, now, window, expected):
    assert is_within_window(timestamp, now, window) is expected


def test_opencode_status_idle_wins_unless_in_flight():
    idle = derive_opencode_state(_ctx(cpu=99.0), status="idle")
    busy = derive_opencode_state(_ctx(in_flight=True), status="idle")
    assert (idle.state, idle.reason) == (AgentState.IDLE, "status_idle")
    assert busy.reason == "in_flight"


def test_opencode_status_error():
    result = derive_opencode_state(_ctx(), status="Failed")
    assert (result.state, result.reason) == (AgentState.ERROR, "status_error")


def test_opencode_server_is_never_active():
    result = derive_opencode_state(
        _ctx(in_flight=True, previous_active_at=NOW - 10), is_server=True
    )
    assert result.state is AgentState.IDLE
    assert result.reason == "server"
    assert result.last_active_at == NOW - 10


def test_opencode_server_still_reports_errors():
    result = derive_opencode_state(_ctx(has_error=True), is_server=True)
    assert result.state is AgentState.ERROR


def test_claude_start_grace():
    fresh = derive_claude_state(_ctx(last_activity_at=NOW - 500), start_grace_ms=1_200)
    stale = derive_claude_state(_ctx(last_activity_at=NOW - 5_000), start_grace_ms=1_200)
    failed = derive_claude_state(
        _ctx(last_activity_at=NOW - 500, has_error=True), start_grace_ms=1_200
    )
    assert fresh.reason == "start_grace"
    assert stale.state is AgentState.IDLE
    assert failed.state is AgentState.ERROR


def test_cpu_sustain_tracker_resets_on_quiet_sample():
    tracker = CpuSustainTracker()
    assert tracker.update(1, 5.0, 1.0, 1_000) == 0
    assert tracker.update(1, 5.0, 1.0, 1_600) == 600
    assert tracker.update(1, 0.5, 1.0, 1_700) == 0
    assert tracker.update(1, 5.0, 1.0, 1_800) == 0
    assert tracker.update(1, 5.0, 1.0, 1_900) == 100


def test_cpu_sustain_tracker_prune():
    tracker = CpuSustainTracker()
    tracker.update(1, 5.0, 1.0, 0)
    tracker.update(2, 5.0, 1.0, 0)
    tracker.prune({2})
    assert len(tracker) == 1
