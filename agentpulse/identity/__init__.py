"""Session identity resolution and pinning."""

from __future__ import annotations

from .codex import (
    SelectionSource,
    SessionFile,
    SessionSelection,
    derive_session_identity,
    normalize_session_path,
    select_codex_session,
    should_drop_pinned_session,
)
from .opencode import (
    OpenCodeSelection,
    OpenCodeSelectionSource,
    OpenCodeSession,
    index_sessions,
    mark_session_used,
    select_opencode_session,
)
from .pins import DropReason, PinDrop, SessionPin, SessionPinCache, is_start_mismatch

__all__ = [
    "DropReason",
    "OpenCodeSelection",
    "OpenCodeSelectionSource",
    "OpenCodeSession",
    "PinDrop",
    "SelectionSource",
    "SessionFile",
    "SessionPin",
    "SessionPinCache",
    "SessionSelection",
    "derive_session_identity",
    "index_sessions",
    "is_start_mismatch",
    "mark_session_used",
    "normalize_session_path",
    "select_codex_session",
    "select_opencode_session",
    "should_drop_pinned_session",
]
