"""Runtime store: event vocabulary, per-agent records, snapshot emission."""

from __future__ import annotations

from .events import AgentEvent, AgentMeta, AgentRuntimeState, EventType, Span, SpanKind
from .store import AgentStateStore, SnapshotListener

__all__ = [
    "AgentEvent",
    "AgentMeta",
    "AgentRuntimeState",
    "AgentStateStore",
    "EventType",
    "SnapshotListener",
    "Span",
    "SpanKind",
]
