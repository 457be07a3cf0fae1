"""Activity derivation: rule tables and CPU sustain tracking."""

from __future__ import annotations

from .cpu import CpuSustainTracker
from .machine import (
    DEFAULT_RULES,
    STRICT_IN_FLIGHT_RULES,
    ActivityContext,
    Rule,
    StateResult,
    derive_claude_state,
    derive_codex_state,
    derive_opencode_state,
    derive_state,
    is_within_window,
)

__all__ = [
    "ActivityContext",
    "CpuSustainTracker",
    "DEFAULT_RULES",
    "Rule",
    "STRICT_IN_FLIGHT_RULES",
    "StateResult",
    "derive_claude_state",
    "derive_codex_state",
    "derive_opencode_state",
    "derive_state",
    "is_within_window",
]
