"""Fusion of push-stream and poll-based in-flight signals."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class InFlightSource(StrEnum):
    API = "api"
    SSE = "sse"


@dataclass(frozen=True, slots=True)
class InFlightSignal:
    in_flight: bool
    last_activity_at: float | None = None


@dataclass(frozen=True, slots=True)
class FusedInFlight:
    in_flight: bool
    source: InFlightSource


def resolve_in_flight(
    *,
    sse: InFlightSignal | None = None,
    api: InFlightSignal | None = None,
) -> FusedInFlight:
    """Merge two optional signals into one.

    A lone signal wins outright. When both disagree the more recent activity
    timestamp wins, and an exact tie goes to the API, which is the
    steady-state authority (the stream can drop events).
    """
    if api is None:
        return FusedInFlight(bool(sse and sse.in_flight), InFlightSource.SSE)
    if sse is None or sse.in_flight == api.in_flight:
        return FusedInFlight(api.in_flight, InFlightSource.API)

    sse_at = sse.last_activity_at or 0
    api_at = api.last_activity_at or 0
    if sse_at > api_at:
        return FusedInFlight(sse.in_flight, InFlightSource.SSE)
    return FusedInFlight(api.in_flight, InFlightSource.API)
