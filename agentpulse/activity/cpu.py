"""Sustained-CPU bookkeeping feeding ``cpu_active_ms``."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(slots=True)
class _CpuWindow:
    above_since: float | None = None
    last_seen_at: float = 0.0


class CpuSustainTracker:
    """Track how long each pid has stayed above its CPU threshold.

    The duration resets to zero on any sample at or below the threshold, so a
    single busy sample between quiet ones never counts as sustained work.
    """

    def __init__(self) -> None:
        self._windows: dict[int, _CpuWindow] = {}

    def update(self, pid: int, cpu: float, threshold: float, now: float) -> float:
        """Record a sample and return the current ``cpu_active_ms`` for ``pid``."""
        window = self._windows.setdefault(pid, _CpuWindow())
        window.last_seen_at = now
        if not _is_number(cpu) or not _is_number(threshold) or cpu <= threshold:
            window.above_since = None
            return 0.0
        if window.above_since is None or window.above_since > now:
            window.above_since = now
        return now - window.above_since

    def forget(self, pid: int) -> None:
        self._windows.pop(pid, None)

    def prune(self, live_pids: set[int]) -> None:
        for pid in list(self._windows):
            if pid not in live_pids:
                del self._windows[pid]

    def __len__(self) -> int:
        return len(self._windows)


def _is_number(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )
