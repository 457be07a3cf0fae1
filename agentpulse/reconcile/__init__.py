"""Cross-source reconciliation: in-flight fusion and snapshot dedup."""

from __future__ import annotations

from .dedupe import STATE_RANK, dedupe_agents, dedupe_key, pick_better
from .inflight import FusedInFlight, InFlightSignal, InFlightSource, resolve_in_flight

__all__ = [
    "FusedInFlight",
    "InFlightSignal",
    "InFlightSource",
    "STATE_RANK",
    "dedupe_agents",
    "dedupe_key",
    "pick_better",
    "resolve_in_flight",
]
