"""Session selection for providers that log each conversation to a file.

A process observation comes with up to five candidate session files gathered
by the scanner: one named by an explicit id in the command line, one found by
a direct id lookup, one the process is known to hold open ("mapped"), the most
recent file whose recorded cwd matches the process cwd, and the file pinned to
this pid on a previous tick. :func:`select_codex_session` picks one of them
and reports how it was chosen.
"""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from enum import StrEnum

# A cwd candidate must be this much fresher than the mapped one to win.
CWD_PREFERENCE_MARGIN_MS = 1000

_RESUME_RE = re.compile(r"\bresume\b", re.IGNORECASE)


class SelectionSource(StrEnum):
    SESSION_ID = "sessionId"
    FIND_SESSION_BY_ID = "findSessionById"
    MAPPED = "mapped"
    CWD = "cwd"
    CWD_PREFERRED = "cwd-preferred"
    CWD_ALTERNATE = "cwd-alternate"
    CWD_FALLBACK = "cwd-fallback"
    PINNED = "pinned"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class SessionFile:
    path: str
    mtime_ms: float = 0.0
    session_id: str | None = None
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class SessionSelection:
    """Outcome of one resolution.

    ``session`` is ``None`` when nothing matched or when reuse was blocked;
    ``pinned_path`` is set only when the cached pin was confirmed.
    """

    session: SessionFile | None
    source: SelectionSource
    reuse_blocked: bool = False
    pinned_path: str | None = None


def normalize_session_path(path: str | None) -> str | None:
    return os.path.abspath(path) if path else None


def should_drop_pinned_session(now: float, mtime_ms: float, stale_file_ms: float) -> bool:
    """True when a pinned file has gone quiet for longer than ``stale_file_ms``.

    A zero, negative or non-finite threshold disables dropping.
    """
    if not math.isfinite(stale_file_ms) or stale_file_ms <= 0:
        return False
    return now - mtime_ms > stale_file_ms


def derive_session_identity(
    provider: str,
    pid: int,
    *,
    reuse_blocked: bool,
    session_id: str | None = None,
    session_path: str | None = None,
) -> str:
    if reuse_blocked:
        return f"{provider}:pid:{pid}"
    if session_id:
        return f"{provider}:{session_id}"
    if session_path:
        return f"{provider}:{session_path}"
    return f"{provider}:pid:{pid}"


def select_codex_session(
    *,
    cmd: str,
    used_session_paths: set[str],
    session_id: str | None = None,
    session_from_id: SessionFile | None = None,
    session_from_find: SessionFile | None = None,
    mapped_session: SessionFile | None = None,
    cwd_session: SessionFile | None = None,
    cached_session: SessionFile | None = None,
) -> SessionSelection:
    """Choose one session file for a process.

    Explicit signals beat the cached pin unless the pin already names the
    chosen path. A path that another process claimed this tick is only reused
    for an explicit resume or a confirmed pin; otherwise the cwd candidate is
    tried as an alternate and, failing that, the selection is reuse-blocked.
    """
    candidates = (
        (session_from_id, SelectionSource.SESSION_ID),
        (session_from_find, SelectionSource.FIND_SESSION_BY_ID),
        (mapped_session, SelectionSource.MAPPED),
        (cwd_session, SelectionSource.CWD),
        (cached_session, SelectionSource.PINNED),
    )
    session: SessionFile | None = None
    source = SelectionSource.NONE
    for candidate, candidate_source in candidates:
        if candidate is not None:
            session, source = candidate, candidate_source
            break

    chosen_path = normalize_session_path(session.path if session else None)
    cached_path = normalize_session_path(cached_session.path if cached_session else None)
    pinned_path = cached_path if cached_path and cached_path == chosen_path else None

    if pinned_path is None and cwd_session is not None and mapped_session is not None:
        if cwd_session.mtime_ms > mapped_session.mtime_ms + CWD_PREFERENCE_MARGIN_MS:
            session, source = cwd_session, SelectionSource.CWD_PREFERRED

    if session is None and cwd_session is not None:
        session, source = cwd_session, SelectionSource.CWD_FALLBACK

    allow_reuse = bool(session_id) or bool(_RESUME_RE.search(cmd or ""))
    allow_reuse = allow_reuse or pinned_path is not None

    reuse_blocked = False
    session_path = normalize_session_path(session.path if session else None)
    if session_path and session_path in used_session_paths and not allow_reuse:
        alternate = normalize_session_path(cwd_session.path if cwd_session else None)
        if alternate and alternate != session_path and alternate not in used_session_paths:
            session, source = cwd_session, SelectionSource.CWD_ALTERNATE
        else:
            session = None
            reuse_blocked = True

    return SessionSelection(
        session=session,
        source=source,
        reuse_blocked=reuse_blocked,
        pinned_path=pinned_path,
    )
