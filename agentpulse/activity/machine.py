"""Priority-ordered activity derivation.

Every provider funnels its evidence into an :class:`ActivityContext` and asks
:func:`derive_state` for a verdict. Rules are evaluated top to bottom and the
first match wins; the order encodes product intent (an error always beats
activity, live in-flight evidence beats inferred CPU evidence, and the hold
window only applies once nothing else fires).

The functions here are pure: no clock reads, no I/O, no exceptions. Missing or
non-finite numbers are normalized toward ``idle`` before any rule runs.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import NamedTuple

from ..types import AgentState

_UNBOUNDED = math.inf


@dataclass(frozen=True, slots=True)
class ActivityContext:
    """Evidence bundle for one derivation call."""

    now: float
    cpu: float = 0.0
    has_error: bool = False
    last_activity_at: float | None = None
    in_flight: bool = False
    last_in_flight_signal_at: float | None = None
    previous_active_at: float | None = None
    cpu_threshold: float = 1.0
    event_window_ms: float = 0.0
    hold_ms: float = 0.0
    in_flight_idle_ms: float | None = None
    spike_multiplier: float = 10.0
    spike_minimum: float = 25.0
    cpu_active_ms: float = 0.0
    sustain_ms: float = 500.0
    in_flight_grace_ms: float = 0.0
    strict_in_flight: bool = False

    def normalized(self) -> ActivityContext:
        """Replace unusable numbers with values that cannot produce ``active``."""
        return replace(
            self,
            now=_finite(self.now, 0.0),
            cpu=max(_finite(self.cpu, 0.0), 0.0),
            last_activity_at=_optional_finite(self.last_activity_at),
            last_in_flight_signal_at=_optional_finite(self.last_in_flight_signal_at),
            previous_active_at=_optional_finite(self.previous_active_at),
            cpu_threshold=_finite(self.cpu_threshold, _UNBOUNDED),
            event_window_ms=_finite(self.event_window_ms, 0.0),
            hold_ms=_finite(self.hold_ms, 0.0),
            in_flight_idle_ms=(
                None if self.in_flight_idle_ms is None else _finite(self.in_flight_idle_ms, 0.0)
            ),
            spike_multiplier=_finite(self.spike_multiplier, _UNBOUNDED),
            spike_minimum=_nan_to(self.spike_minimum, _UNBOUNDED),
            cpu_active_ms=max(_finite(self.cpu_active_ms, 0.0), 0.0),
            sustain_ms=_finite(self.sustain_ms, _UNBOUNDED),
            in_flight_grace_ms=_finite(self.in_flight_grace_ms, 0.0),
        )


@dataclass(frozen=True, slots=True)
class StateResult:
    """Verdict from :func:`derive_state`.

    ``last_active_at`` is the instant the caller should remember as
    ``previous_active_at`` for the next tick.
    """

    state: AgentState
    reason: str
    last_active_at: float | None = None


def _finite(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return float(value)


def _nan_to(value: object, default: float) -> float:
    # +inf is a legitimate "disabled" marker for thresholds.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if math.isnan(value) or value == -math.inf:
        return default
    return float(value)


def _optional_finite(value: float | None) -> float | None:
    if value is None:
        return None
    result = _finite(value, math.nan)
    return None if math.isnan(result) else result


def is_within_window(timestamp: float | None, now: float, window_ms: float) -> bool:
    """Return True when ``timestamp`` is at most ``window_ms`` before ``now``.

    A zero window never matches; a negative window means "no decay".
    """
    if timestamp is None:
        return False
    if not math.isfinite(window_ms):
        return False
    if window_ms < 0:
        return True
    if window_ms == 0:
        return False
    return now - timestamp <= window_ms


def spike_threshold(ctx: ActivityContext) -> float:
    return max(ctx.cpu_threshold * ctx.spike_multiplier, ctx.spike_minimum)


# --- predicates -------------------------------------------------------------


def _has_error(ctx: ActivityContext) -> bool:
    return ctx.has_error


def _has_in_flight(ctx: ActivityContext) -> bool:
    if not ctx.in_flight:
        return False
    if ctx.in_flight_idle_ms is None:
        return True
    return is_within_window(ctx.last_in_flight_signal_at, ctx.now, ctx.in_flight_idle_ms)


def _has_in_flight_grace(ctx: ActivityContext) -> bool:
    return is_within_window(ctx.last_in_flight_signal_at, ctx.now, ctx.in_flight_grace_ms)


def _has_cpu_spike(ctx: ActivityContext) -> bool:
    return ctx.cpu >= spike_threshold(ctx)


def _has_recent_activity(ctx: ActivityContext) -> bool:
    return is_within_window(ctx.last_activity_at, ctx.now, ctx.event_window_ms)


def _has_sustained_cpu(ctx: ActivityContext) -> bool:
    return ctx.cpu > ctx.cpu_threshold and ctx.cpu_active_ms >= ctx.sustain_ms


def _within_hold(ctx: ActivityContext) -> bool:
    if ctx.previous_active_at is None or ctx.hold_ms <= 0:
        return False
    return ctx.now - ctx.previous_active_at <= ctx.hold_ms


def _always(ctx: ActivityContext) -> bool:
    return True


# --- rule tables ------------------------------------------------------------


class Rule(NamedTuple):
    """One ``(predicate, result builder)`` pair of a rule table."""

    predicate: Callable[[ActivityContext], bool]
    build: Callable[[ActivityContext], StateResult]


def _active(reason: str, at: Callable[[ActivityContext], float | None]) -> Callable[
    [ActivityContext], StateResult
]:
    return lambda ctx: StateResult(AgentState.ACTIVE, reason, at(ctx))


def _now(ctx: ActivityContext) -> float | None:
    return ctx.now


_ERROR_RULE = Rule(_has_error, lambda ctx: StateResult(AgentState.ERROR, "error", ctx.now))

DEFAULT_RULES: tuple[Rule, ...] = (
    _ERROR_RULE,
    Rule(_has_in_flight, _active("in_flight", _now)),
    Rule(_has_cpu_spike, _active("cpu_spike", _now)),
    Rule(_has_recent_activity, _active("recent_event", lambda ctx: ctx.last_activity_at)),
    Rule(_has_sustained_cpu, _active("sustained_cpu", _now)),
    Rule(_within_hold, _active("hold_active", lambda ctx: ctx.previous_active_at)),
    Rule(_always, lambda ctx: StateResult(AgentState.IDLE, "no_signal")),
)

STRICT_IN_FLIGHT_RULES: tuple[Rule, ...] = (
    _ERROR_RULE,
    Rule(_has_in_flight, _active("in_flight", _now)),
    Rule(_has_in_flight_grace, _active("in_flight_grace", _now)),
    Rule(_always, lambda ctx: StateResult(AgentState.IDLE, "no_in_flight")),
)


def derive_state(ctx: ActivityContext) -> StateResult:
    """Evaluate the rule table for ``ctx``; first match wins."""
    ctx = ctx.normalized()
    rules = STRICT_IN_FLIGHT_RULES if ctx.strict_in_flight else DEFAULT_RULES
    for rule in rules:
        if rule.predicate(ctx):
            return rule.build(ctx)
    return StateResult(AgentState.IDLE, "no_signal")


# --- provider derivations ---------------------------------------------------

_IDLE_STATUS = re.compile(r"idle|stopped|paused")
_ERROR_STATUS = re.compile(r"error|failed|failure")


def derive_codex_state(ctx: ActivityContext) -> StateResult:
    """Headless CLI agent: generic rules, in-flight evidence from notify hooks and logs."""
    return derive_state(ctx)


def derive_opencode_state(
    ctx: ActivityContext,
    *,
    status: str | None = None,
    is_server: bool = False,
) -> StateResult:
    """Server-mode agent: status text and server role override the generic verdict."""
    normalized = ctx.normalized()
    status_text = (status or "").lower()
    if status_text and _ERROR_STATUS.search(status_text):
        return StateResult(AgentState.ERROR, "status_error", normalized.now)
    if status_text and _IDLE_STATUS.search(status_text) and not _has_in_flight(normalized):
        return StateResult(AgentState.IDLE, "status_idle")

    result = derive_state(normalized)
    if is_server and result.state is not AgentState.ERROR:
        # The server hosts sessions; it is never itself the active worker.
        return StateResult(
            AgentState.IDLE,
            "server",
            normalized.previous_active_at or result.last_active_at,
        )
    return result


def derive_claude_state(ctx: ActivityContext, *, start_grace_ms: float = 1200) -> StateResult:
    """Interactive terminal agent: a fresh prompt stays active for a short grace window."""
    normalized = ctx.normalized()
    if not normalized.has_error and is_within_window(
        normalized.last_activity_at, normalized.now, _finite(start_grace_ms, 0.0)
    ):
        return StateResult(AgentState.ACTIVE, "start_grace", normalized.now)
    return derive_state(normalized)
