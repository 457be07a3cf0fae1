"""Session selection for the server-mode provider.

Sessions are identified by id rather than by file. A per-tick map of
``session id -> pid`` guarantees that one session is attributed to at most one
process in a single scan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class OpenCodeSelectionSource(StrEnum):
    PID = "pid"
    CACHE = "cache"
    DIR = "dir"
    NONE = "none"


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _coerce_timestamp(value: Any) -> float | None:
    number = _coerce_number(value)
    if number is not None:
        return number
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return None
    return None


def _trimmed(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True, slots=True)
class OpenCodeSession:
    """One session as reported by the provider's HTTP API."""

    id: str
    pid: int | None = None
    directory: str | None = None
    parent_id: str | None = None
    title: str | None = None
    status: str | None = None
    model: str | None = None
    created_at: float | None = None
    updated_at: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_child(self) -> bool:
        return self.parent_id is not None

    @classmethod
    def from_api(cls, data: Any) -> OpenCodeSession | None:
        """Parse a loosely-shaped API record; returns None without a usable id."""
        if not isinstance(data, dict):
            return None
        info = data.get("info") if isinstance(data.get("info"), dict) else {}
        session_id = _trimmed(
            data.get("id")
            or data.get("sessionId")
            or data.get("sessionID")
            or data.get("session_id")
            or info.get("id")
        )
        if session_id is None:
            return None
        process = data.get("process") if isinstance(data.get("process"), dict) else {}
        pid = _coerce_number(
            _first_present(
                data.get("pid"),
                data.get("processId"),
                data.get("processID"),
                process.get("pid"),
                process.get("processId"),
                process.get("processID"),
            )
        )
        time_info = data.get("time") if isinstance(data.get("time"), dict) else {}
        return cls(
            id=session_id,
            pid=int(pid) if pid is not None else None,
            directory=_trimmed(data.get("directory") or data.get("cwd")),
            parent_id=_trimmed(
                _first_present(data.get("parentID"), data.get("parentId"), data.get("parent_id"))
            ),
            title=_trimmed(data.get("title") or data.get("name")),
            status=_trimmed(data.get("status")),
            model=_trimmed(data.get("model")),
            created_at=_coerce_timestamp(
                _first_present(time_info.get("created"), data.get("createdAt"), data.get("created"))
            ),
            updated_at=_coerce_timestamp(
                _first_present(
                    time_info.get("updated"),
                    data.get("lastActivityAt"),
                    data.get("lastActivity"),
                    data.get("updatedAt"),
                    data.get("updated"),
                )
            ),
            raw=dict(data),
        )

    def activity_at(self) -> float | None:
        """API activity time, ignored while the status reads as idle."""
        status = (self.status or "").lower()
        if any(word in status for word in ("idle", "stopped", "paused")):
            return None
        return self.updated_at if self.updated_at is not None else self.created_at


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


@dataclass(frozen=True, slots=True)
class OpenCodeSelection:
    session: OpenCodeSession | None
    session_id: str | None
    source: OpenCodeSelectionSource


def mark_session_used(used: dict[str, int], session_id: str, pid: int) -> bool:
    """Claim ``session_id`` for ``pid``; False if another pid already holds it."""
    existing = used.get(session_id)
    if existing is not None and existing != pid:
        return False
    used[session_id] = pid
    return True


def pick_session_by_dir(
    *,
    directory: str | None,
    pid: int,
    sessions_by_dir: dict[str, list[OpenCodeSession]],
    sessions_by_id: dict[str, OpenCodeSession],
    used: dict[str, int],
    active_ids_by_dir: dict[str, list[str]] | None = None,
    child_ids: set[str] | None = None,
) -> OpenCodeSession | None:
    if not directory:
        return None
    sessions = sessions_by_dir.get(directory)
    if not sessions:
        return None
    child_ids = child_ids or set()
    for session_id in (active_ids_by_dir or {}).get(directory, []):
        if session_id in child_ids:
            continue
        active = sessions_by_id.get(session_id)
        if active is not None and active.is_child:
            continue
        if not mark_session_used(used, session_id, pid):
            continue
        # The id stays reserved even if the API no longer lists it.
        return active
    for session in sessions:
        if session.is_child or session.id in child_ids:
            continue
        if not mark_session_used(used, session.id, pid):
            continue
        return session
    return None


def select_opencode_session(
    *,
    pid: int,
    directory: str | None,
    sessions_by_id: dict[str, OpenCodeSession],
    sessions_by_dir: dict[str, list[OpenCodeSession]],
    used: dict[str, int],
    session_by_pid: OpenCodeSession | None = None,
    cached_session_id: str | None = None,
    active_ids_by_dir: dict[str, list[str]] | None = None,
    child_ids: set[str] | None = None,
) -> OpenCodeSelection:
    """Resolve a process to a session: own pid first, then its pin, then its directory."""
    child_ids = child_ids or set()
    if (
        session_by_pid is not None
        and not session_by_pid.is_child
        and session_by_pid.id not in child_ids
        and mark_session_used(used, session_by_pid.id, pid)
    ):
        return OpenCodeSelection(session_by_pid, session_by_pid.id, OpenCodeSelectionSource.PID)

    if cached_session_id and cached_session_id not in child_ids:
        cached = sessions_by_id.get(cached_session_id)
        if (cached is None or not cached.is_child) and mark_session_used(
            used, cached_session_id, pid
        ):
            return OpenCodeSelection(cached, cached_session_id, OpenCodeSelectionSource.CACHE)

    by_dir = pick_session_by_dir(
        directory=directory,
        pid=pid,
        sessions_by_dir=sessions_by_dir,
        sessions_by_id=sessions_by_id,
        used=used,
        active_ids_by_dir=active_ids_by_dir,
        child_ids=child_ids,
    )
    if by_dir is not None:
        return OpenCodeSelection(by_dir, by_dir.id, OpenCodeSelectionSource.DIR)
    return OpenCodeSelection(None, None, OpenCodeSelectionSource.NONE)


def index_sessions(
    sessions: list[OpenCodeSession],
) -> tuple[
    dict[str, OpenCodeSession], dict[str, list[OpenCodeSession]], dict[int, OpenCodeSession]
]:
    """Build the by-id, by-directory (most recent first) and by-pid lookups."""
    by_id: dict[str, OpenCodeSession] = {}
    by_dir: dict[str, list[OpenCodeSession]] = {}
    by_pid: dict[int, OpenCodeSession] = {}
    for session in sessions:
        by_id[session.id] = session
        if session.directory:
            by_dir.setdefault(session.directory, []).append(session)
        if session.pid is not None:
            by_pid[session.pid] = session
    for entries in by_dir.values():
        entries.sort(key=lambda s: s.updated_at or s.created_at or 0, reverse=True)
    return by_id, by_dir, by_pid
