"""Session-side feeds consumed by the scanner.

Log tailing and the server-mode HTTP API are described here as protocols.
:class:`CodexSessionIndex` is a rate-limited index of recent session log
files; the HTTP poller lives in :mod:`.opencode_api`.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..identity.codex import SessionFile
from ..identity.opencode import OpenCodeSession
from ..providers.codex import LogSummary
from ..reconcile.inflight import InFlightSignal

logger = logging.getLogger(__name__)

SESSION_WINDOW_MS = 30 * 60 * 1000
SESSION_SCAN_INTERVAL_MS = 5000
_FIRST_LINE_LIMIT = 64 * 1024


@runtime_checkable
class LogSummaryFeed(Protocol):
    """Digest of a session log, or None when nothing could be read."""

    def summarize(self, session_path: str) -> LogSummary | None:
        ...


@dataclass(frozen=True, slots=True)
class OpenCodeApiSnapshot:
    reachable: bool
    sessions: list[OpenCodeSession] = field(default_factory=list)
    in_flight: dict[str, InFlightSignal] = field(default_factory=dict)
    active_ids_by_dir: dict[str, list[str]] = field(default_factory=dict)


@runtime_checkable
class OpenCodeApiFeed(Protocol):
    """Poll-based view of the server's sessions."""

    def fetch(self) -> OpenCodeApiSnapshot:
        ...


def resolve_codex_home(configured: str | None = None) -> Path:
    override = (
        configured or os.environ.get("AGENTPULSE_CODEX_HOME") or os.environ.get("CODEX_HOME")
    )
    if override:
        return Path(override).expanduser().resolve()
    return Path.home() / ".codex"


def _read_session_meta(path: Path) -> tuple[str | None, str | None]:
    """``(session_id, cwd)`` from the first record of a rollout file."""
    try:
        with open(path, encoding="utf-8") as f:
            line = f.readline(_FIRST_LINE_LIMIT)
    except OSError:
        return None, None
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None, None
    if not isinstance(record, dict):
        return None, None
    payload: Any = record.get("payload") if isinstance(record.get("payload"), dict) else record
    session_id = payload.get("id") or payload.get("session_id")
    cwd = payload.get("cwd")
    return (
        session_id if isinstance(session_id, str) else None,
        cwd if isinstance(cwd, str) else None,
    )


class CodexSessionIndex:
    """Recent ``*.jsonl`` session logs under ``<home>/sessions``.

    The directory walk runs at most once per ``scan_interval_ms``; between
    walks lookups are served from the cached list.
    """

    def __init__(
        self,
        home: Path,
        *,
        window_ms: float = SESSION_WINDOW_MS,
        scan_interval_ms: float = SESSION_SCAN_INTERVAL_MS,
    ) -> None:
        self.home = home
        self.window_ms = window_ms
        self.scan_interval_ms = scan_interval_ms
        self._files: list[SessionFile] = []
        self._meta: dict[str, tuple[str | None, str | None]] = {}
        self._last_scan: float | None = None

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    def refresh(self, now: float | None = None, *, force: bool = False) -> list[SessionFile]:
        now = time.time() * 1000 if now is None else now
        if (
            not force
            and self._last_scan is not None
            and now - self._last_scan < self.scan_interval_ms
        ):
            return self.recent(now)
        self._last_scan = now
        files: list[SessionFile] = []
        if self.sessions_dir.is_dir():
            for path in self.sessions_dir.rglob("*.jsonl"):
                try:
                    mtime_ms = path.stat().st_mtime * 1000
                except OSError:
                    continue
                if now - mtime_ms > self.window_ms:
                    continue
                key = str(path)
                if key not in self._meta:
                    self._meta[key] = _read_session_meta(path)
                session_id, cwd = self._meta[key]
                files.append(
                    SessionFile(path=key, mtime_ms=mtime_ms, session_id=session_id, cwd=cwd)
                )
        files.sort(key=lambda f: f.mtime_ms, reverse=True)
        self._files = files
        return list(files)

    def recent(self, now: float) -> list[SessionFile]:
        return [f for f in self._files if now - f.mtime_ms <= self.window_ms]

    def by_id(self, session_id: str | None) -> SessionFile | None:
        if not session_id:
            return None
        for session in self._files:
            if session.session_id == session_id or session_id in os.path.basename(session.path):
                return self.stat(session.path) or session
        return None

    def by_cwd(self, cwd: str | None, *, exclude: set[str] | None = None) -> SessionFile | None:
        """Most recently written session recorded for ``cwd``."""
        if not cwd:
            return None
        for session in self._files:
            if session.cwd == cwd and (not exclude or session.path not in exclude):
                return session
        return None

    def find(self, session_id: str | None) -> SessionFile | None:
        """Walk the whole tree for a file named after ``session_id``."""
        if not session_id or not self.sessions_dir.is_dir():
            return None
        for path in self.sessions_dir.rglob(f"*{session_id}*.jsonl"):
            found = self.stat(str(path))
            if found is not None:
                return found
        return None

    def stat(self, path: str) -> SessionFile | None:
        try:
            mtime_ms = os.stat(path).st_mtime * 1000
        except OSError:
            return None
        if path not in self._meta:
            self._meta[path] = _read_session_meta(Path(path))
        session_id, cwd = self._meta[path]
        return SessionFile(path=path, mtime_ms=mtime_ms, session_id=session_id, cwd=cwd)
