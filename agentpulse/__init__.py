"""agentpulse: live activity monitoring for local coding agents."""

__version__ = "0.1.0"

from .activity import ActivityContext, StateResult, derive_state
from .config import ConfigError, MonitorConfig
from .core import AgentEvent, AgentMeta, AgentStateStore, EventType, SpanKind
from .daemon import MonitorDaemon
from .scan import AgentScanner
from .types import AgentKind, AgentSnapshot, AgentState, SnapshotPayload

__all__ = [
    "__version__",
    "ActivityContext",
    "AgentEvent",
    "AgentKind",
    "AgentMeta",
    "AgentScanner",
    "AgentSnapshot",
    "AgentState",
    "AgentStateStore",
    "ConfigError",
    "EventType",
    "MonitorConfig",
    "MonitorDaemon",
    "SnapshotPayload",
    "SpanKind",
    "StateResult",
    "derive_state",
]
