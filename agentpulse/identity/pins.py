"""Per-pid session pins that survive between scan ticks.

A pin remembers which session a pid resolved to on an earlier tick. Pins are
owned by whoever constructs the cache (normally the scanner), never by module
state, so tests can build as many independent caches as they need.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from .codex import SessionFile, should_drop_pinned_session

logger = logging.getLogger(__name__)

# Two start times closer than this describe the same process.
START_MS_EPSILON_MS = 1000


def is_start_mismatch(
    cached: float | None, current: float | None, epsilon_ms: float = START_MS_EPSILON_MS
) -> bool:
    if cached is None or current is None:
        return False
    return abs(cached - current) > epsilon_ms


class DropReason(StrEnum):
    STALE = "stale"
    EXITED = "exited"
    RESTARTED = "restarted"


@dataclass(slots=True)
class SessionPin:
    pid: int
    path: str | None = None
    session_id: str | None = None
    mtime_ms: float = 0.0
    start_ms: float | None = None
    last_seen_at: float = 0.0

    def as_session_file(self) -> SessionFile | None:
        if not self.path:
            return None
        return SessionFile(path=self.path, mtime_ms=self.mtime_ms, session_id=self.session_id)


@dataclass(frozen=True, slots=True)
class PinDrop:
    pid: int
    pin: SessionPin
    reason: DropReason


class SessionPinCache:
    """Mutable pid -> :class:`SessionPin` map with restart and staleness handling."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self._pins: dict[int, SessionPin] = {}

    def get(self, pid: int, start_ms: float | None = None) -> SessionPin | None:
        """Return the pin for ``pid`` unless the pid now belongs to a new process."""
        pin = self._pins.get(pid)
        if pin is None:
            return None
        if is_start_mismatch(pin.start_ms, start_ms):
            logger.debug("%s pid %d restarted; dropping pin %s", self.provider, pid, pin.path)
            del self._pins[pid]
            return None
        return pin

    def pin(
        self,
        pid: int,
        *,
        now: float,
        path: str | None = None,
        session_id: str | None = None,
        mtime_ms: float | None = None,
        start_ms: float | None = None,
    ) -> SessionPin:
        existing = self._pins.get(pid)
        if existing is not None and (existing.path, existing.session_id) == (path, session_id):
            existing.last_seen_at = now
            if mtime_ms is not None and mtime_ms > existing.mtime_ms:
                existing.mtime_ms = mtime_ms
            if start_ms is not None:
                existing.start_ms = start_ms
            return existing
        pin = SessionPin(
            pid=pid,
            path=path,
            session_id=session_id,
            mtime_ms=mtime_ms or 0.0,
            start_ms=start_ms,
            last_seen_at=now,
        )
        self._pins[pid] = pin
        return pin

    def unpin(self, pid: int) -> SessionPin | None:
        return self._pins.pop(pid, None)

    def reset_on_restart(self, pid: int, start_ms: float | None) -> bool:
        """Drop the pin when ``start_ms`` shows pid reuse; True if something was reset."""
        pin = self._pins.get(pid)
        if pin is None or not is_start_mismatch(pin.start_ms, start_ms):
            return False
        del self._pins[pid]
        return True

    def prune(
        self,
        live_pids: set[int],
        *,
        now: float,
        stale_file_ms: float,
    ) -> list[PinDrop]:
        """Drop pins whose file went stale or whose process is gone."""
        dropped: list[PinDrop] = []
        for pid, pin in list(self._pins.items()):
            reason: DropReason | None = None
            if pin.path and should_drop_pinned_session(now, pin.mtime_ms, stale_file_ms):
                reason = DropReason.STALE
            elif pid not in live_pids:
                reason = DropReason.EXITED
            if reason is None:
                continue
            del self._pins[pid]
            dropped.append(PinDrop(pid=pid, pin=pin, reason=reason))
        if dropped:
            logger.debug(
                "%s: dropped %d pin(s): %s",
                self.provider,
                len(dropped),
                ", ".join(f"{d.pid}={d.reason}" for d in dropped),
            )
        return dropped

    def pinned_paths(self) -> set[str]:
        return {pin.path for pin in self._pins.values() if pin.path}

    def __contains__(self, pid: object) -> bool:
        return pid in self._pins

    def __len__(self) -> int:
        return len(self._pins)
