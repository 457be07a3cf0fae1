"""Per-provider glue: command parsing, hook trackers, event adapters."""

from __future__ import annotations

from .claude import (
    ClaudeHookEvent,
    ClaudeHookTracker,
    ClaudeSessionState,
    claude_agent_key,
    claude_store_events,
    normalize_hook_type,
)
from .codex import (
    CodexLogAdapter,
    CodexNotifyEvent,
    CodexThreadState,
    CodexThreadTracker,
    LogSummary,
    codex_notify_store_events,
)
from .commands import Provider, RepoRootCache, detect_provider, split_args
from .opencode import OpenCodeEventAdapter, should_include_opencode_process

__all__ = [
    "ClaudeHookEvent",
    "ClaudeHookTracker",
    "ClaudeSessionState",
    "CodexLogAdapter",
    "CodexNotifyEvent",
    "CodexThreadState",
    "CodexThreadTracker",
    "LogSummary",
    "OpenCodeEventAdapter",
    "Provider",
    "RepoRootCache",
    "claude_agent_key",
    "claude_store_events",
    "codex_notify_store_events",
    "detect_provider",
    "normalize_hook_type",
    "should_include_opencode_process",
    "split_args",
]
