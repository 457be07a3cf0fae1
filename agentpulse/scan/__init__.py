"""Process scanning: observations, session feeds and the per-tick scanner."""

from __future__ import annotations

from .opencode_api import HttpOpenCodeApiFeed, OpenCodeEventStream
from .process import ProcessInfo, ProcessSource, PsutilProcessSource, StaticProcessSource
from .scanner import AgentScanner, LoggedSession, ScanResult, compile_process_match
from .sessions import (
    CodexSessionIndex,
    LogSummaryFeed,
    OpenCodeApiFeed,
    OpenCodeApiSnapshot,
    resolve_codex_home,
)

__all__ = [
    "AgentScanner",
    "CodexSessionIndex",
    "HttpOpenCodeApiFeed",
    "LogSummaryFeed",
    "LoggedSession",
    "OpenCodeApiFeed",
    "OpenCodeApiSnapshot",
    "OpenCodeEventStream",
    "ProcessInfo",
    "ProcessSource",
    "PsutilProcessSource",
    "ScanResult",
    "StaticProcessSource",
    "compile_process_match",
    "resolve_codex_home",
]
