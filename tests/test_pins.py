"""Tests for per-pid session pins."""

from __future__ import annotations

from agentpulse.identity import DropReason, SessionPinCache, is_start_mismatch


def _make_cache() -> SessionPinCache:
    cache = SessionPinCache("codex")
    cache.pin(10, now=1_000, path="/s/a.jsonl", session_id="a", mtime_ms=900, start_ms=500)
    return cache


def test_start_mismatch_epsilon():
    assert is_start_mismatch(1_000, 2_000) is False
    assert is_start_mismatch(1_000, 2_001) is True
    assert is_start_mismatch(None, 2_001) is False


def test_get_drops_pin_after_pid_reuse():
    cache = _make_cache()
    assert cache.get(10, 900) is not None
    assert cache.get(10, 60_000) is None
    assert 10 not in cache


def test_repin_same_session_keeps_newest_mtime():
    cache = _make_cache()
    pin = cache.pin(10, now=2_000, path="/s/a.jsonl", session_id="a", mtime_ms=800)
    assert pin.mtime_ms == 900
    assert pin.last_seen_at == 2_000
    assert len(cache) == 1


def test_prune_reports_stale_before_exited():
    cache = _make_cache()
    cache.pin(11, now=1_000, path="/s/b.jsonl", mtime_ms=100_000)

    drops = cache.prune({11}, now=100_000, stale_file_ms=60_000)

    assert [(d.pid, d.reason) for d in drops] == [(10, DropReason.STALE)]
    assert 11 in cache


def test_prune_drops_exited_pids():
    cache = _make_cache()
    drops = cache.prune(set(), now=1_000, stale_file_ms=0)
    assert [(d.pid, d.reason) for d in drops] == [(10, DropReason.EXITED)]
    assert len(cache) == 0


def test_reset_on_restart():
    cache = _make_cache()
    assert cache.reset_on_restart(10, 700) is False
    assert cache.reset_on_restart(10, 5_000) is True
    assert cache.pinned_paths() == set()
