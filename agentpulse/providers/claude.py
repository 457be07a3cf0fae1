"""Hook-event tracking for the interactive terminal agent.

The terminal agent reports lifecycle hooks (prompt submitted, tool started,
permission requested, turn stopped, ...) as small JSON payloads. They reach
the daemon through the inbox and are used twice: the
:class:`ClaudeHookTracker` keeps a per-session in-flight flag for the process
scanner, and :func:`claude_store_events` turns each hook into store events.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any

from ..core.events import AgentEvent, AgentMeta, EventType, SpanKind
from ..types import AgentKind

logger = logging.getLogger(__name__)

DEFAULT_IN_FLIGHT_TIMEOUT_MS = 15_000
DEFAULT_EVENT_TTL_MS = 30 * 60 * 1000

_CANONICAL_TYPES = {
    "userpromptsubmit": "UserPromptSubmit",
    "pretooluse": "PreToolUse",
    "posttooluse": "PostToolUse",
    "posttoolusefailure": "PostToolUseFailure",
    "permissionrequest": "PermissionRequest",
    "subagentstart": "SubagentStart",
    "subagentstop": "SubagentStop",
    "sessionstart": "SessionStart",
    "sessionend": "SessionEnd",
    "stop": "Stop",
    "notification": "Notification",
}

IN_FLIGHT_EVENTS = frozenset(
    {
        "UserPromptSubmit",
        "PreToolUse",
        "PermissionRequest",
        "PostToolUse",
        "PostToolUseFailure",
        "SubagentStart",
    }
)
IDLE_EVENTS = frozenset({"Stop", "SubagentStop", "SessionEnd"})
NON_ACTIVITY_EVENTS = IDLE_EVENTS | {"SessionStart"}

_NON_ALNUM = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def normalize_hook_type(value: str) -> str:
    """Map ``user_prompt_submit``, ``user-prompt-submit`` etc. to the canonical name."""
    trimmed = value.strip()
    if not trimmed:
        return trimmed
    return _CANONICAL_TYPES.get(_NON_ALNUM.sub("", trimmed).lower(), trimmed)


def _read_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True, slots=True)
class ClaudeHookEvent:
    type: str
    session_id: str
    ts: float
    cwd: str | None = None
    transcript_path: str | None = None
    notification_type: str | None = None
    tool_name: str | None = None
    prompt: str | None = None

    @property
    def is_idle_notification(self) -> bool:
        return (
            self.type == "Notification"
            and (self.notification_type or "").lower() == "idle_prompt"
        )

    @classmethod
    def from_payload(cls, payload: Any, now: float | None = None) -> ClaudeHookEvent | None:
        """Normalize a raw hook payload; None when the event or session is missing."""
        if not isinstance(payload, dict):
            return None
        hook_event = (
            _read_string(payload.get("hook_event_name"))
            or _read_string(payload.get("hookEventName"))
            or _read_string(payload.get("event"))
            or _read_string(payload.get("type"))
        )
        session_id = _read_string(payload.get("session_id")) or _read_string(
            payload.get("sessionId")
        )
        if not hook_event or not session_id:
            return None
        ts = payload.get("timestamp")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)):
            ts = now if now is not None else time.time() * 1000
        return cls(
            type=normalize_hook_type(hook_event),
            session_id=session_id,
            ts=float(ts),
            cwd=_read_string(payload.get("cwd")),
            transcript_path=_read_string(payload.get("transcript_path"))
            or _read_string(payload.get("transcriptPath")),
            notification_type=_read_string(payload.get("notification_type"))
            or _read_string(payload.get("notificationType")),
            tool_name=_read_string(payload.get("tool_name"))
            or _read_string(payload.get("toolName")),
            prompt=_read_string(payload.get("prompt")),
        )

    def to_payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "hook_event_name": self.type,
            "session_id": self.session_id,
            "timestamp": self.ts,
        }
        for key, value in (
            ("cwd", self.cwd),
            ("transcript_path", self.transcript_path),
            ("notification_type", self.notification_type),
            ("tool_name", self.tool_name),
            ("prompt", self.prompt),
        ):
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True, slots=True)
class ClaudeSessionState:
    session_id: str
    in_flight: bool
    last_seen_at: float
    last_event: str
    cwd: str | None = None
    transcript_path: str | None = None
    last_activity_at: float | None = None


class ClaudeHookTracker:
    """In-flight bookkeeping per session, keyed by session id.

    In-flight sessions that stay silent for ``in_flight_timeout_ms`` drop back
    to not-in-flight; sessions not heard from for ``event_ttl_ms`` are
    forgotten.
    """

    def __init__(
        self,
        *,
        in_flight_timeout_ms: float = DEFAULT_IN_FLIGHT_TIMEOUT_MS,
        event_ttl_ms: float = DEFAULT_EVENT_TTL_MS,
    ) -> None:
        self.in_flight_timeout_ms = in_flight_timeout_ms
        self.event_ttl_ms = event_ttl_ms
        self._states: dict[str, ClaudeSessionState] = {}

    def handle(self, event: ClaudeHookEvent) -> ClaudeSessionState:
        self.prune(event.ts)
        prev = self._states.get(event.session_id)
        in_flight = prev.in_flight if prev else False
        last_activity_at = prev.last_activity_at if prev else None
        if event.type in IN_FLIGHT_EVENTS:
            in_flight = True
        if event.type in IDLE_EVENTS or event.is_idle_notification:
            in_flight = False
            last_activity_at = None
        elif event.type and event.type not in NON_ACTIVITY_EVENTS:
            last_activity_at = event.ts
        state = ClaudeSessionState(
            session_id=event.session_id,
            in_flight=in_flight,
            last_seen_at=event.ts,
            last_event=event.type,
            cwd=event.cwd or (prev.cwd if prev else None),
            transcript_path=event.transcript_path or (prev.transcript_path if prev else None),
            last_activity_at=last_activity_at,
        )
        self._states[event.session_id] = state
        return state

    def prune(self, now: float) -> None:
        for session_id, state in list(self._states.items()):
            if now - state.last_seen_at > self.event_ttl_ms:
                del self._states[session_id]
                continue
            if state.in_flight:
                last_signal = (
                    state.last_activity_at
                    if state.last_activity_at is not None
                    else state.last_seen_at
                )
                if now - last_signal > self.in_flight_timeout_ms:
                    self._states[session_id] = replace(state, in_flight=False)

    def by_session(self, session_id: str, now: float) -> ClaudeSessionState | None:
        self.prune(now)
        return self._states.get(session_id)

    def by_cwd(self, cwd: str | None, now: float) -> ClaudeSessionState | None:
        """Most recently active session recorded for ``cwd``."""
        if not cwd:
            return None
        self.prune(now)
        best: ClaudeSessionState | None = None
        best_at = 0.0
        for state in self._states.values():
            if state.cwd != cwd:
                continue
            candidate_at = (
                state.last_activity_at
                if state.last_activity_at is not None
                else state.last_seen_at
            )
            if best is None or candidate_at > best_at:
                best, best_at = state, candidate_at
        return best

    def __len__(self) -> int:
        return len(self._states)


def claude_agent_key(session_id: str) -> str:
    return f"claude:{session_id}"


def claude_store_events(event: ClaudeHookEvent) -> list[AgentEvent]:
    """Translate one hook into the store's generic lifecycle events."""
    key = claude_agent_key(event.session_id)
    meta = AgentMeta(
        kind=AgentKind.CLAUDE_TUI,
        cwd=event.cwd,
        session_path=event.transcript_path,
        identity=key,
    )

    def make(
        event_type: EventType,
        span_kind: SpanKind | None = None,
        span_id: str | None = None,
        summary: str | None = None,
    ) -> AgentEvent:
        return AgentEvent(
            type=event_type,
            agent_key=key,
            ts=event.ts,
            meta=meta,
            span_id=span_id,
            span_kind=span_kind,
            summary=summary,
        )

    hook = event.type
    if hook == "SessionStart":
        return [make(EventType.PRESENCE_UP, summary="session started")]
    if hook == "SessionEnd":
        return [make(EventType.PRESENCE_DOWN)]
    if hook == "UserPromptSubmit":
        if event.prompt:
            meta.title = event.prompt[:80]
        return [make(EventType.SPAN_START, SpanKind.TURN, "turn", summary="prompt submitted")]
    if hook == "PreToolUse":
        return [
            make(EventType.SPAN_START, SpanKind.TURN, "turn"),
            make(
                EventType.SPAN_START,
                SpanKind.TOOL,
                "tool",
                summary=f"tool: {event.tool_name}" if event.tool_name else "tool",
            ),
        ]
    if hook == "PermissionRequest":
        return [make(EventType.BLOCKED, summary="permission requested")]
    if hook in ("PostToolUse", "PostToolUseFailure"):
        # The turn carries on after a tool, including one that waited on approval.
        return [
            make(EventType.UNBLOCKED),
            make(EventType.SPAN_START, SpanKind.TURN, "turn"),
            make(EventType.SPAN_END, SpanKind.TOOL, "tool"),
        ]
    if hook == "SubagentStart":
        return [make(EventType.SPAN_START, SpanKind.TURN, "subagent")]
    if hook == "SubagentStop":
        return [make(EventType.SPAN_END, SpanKind.TURN, "subagent")]
    if hook == "Stop" or event.is_idle_notification:
        return [
            make(EventType.SPAN_END, SpanKind.TOOL, "tool"),
            make(EventType.SPAN_END, SpanKind.TURN, "subagent"),
            make(EventType.SPAN_END, SpanKind.TURN, "turn", summary="turn finished"),
        ]
    if hook == "Notification":
        return [make(EventType.SPAN_PROGRESS)]
    logger.debug("Ignoring unrecognised hook %r for %s", hook, key)
    return []
