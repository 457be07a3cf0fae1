"""HTTP feeds for the server-mode agent.

:class:`HttpOpenCodeApiFeed` polls the server's session list and, for
recently active sessions, their message history to derive a poll-based
in-flight signal. :class:`OpenCodeEventStream` follows the server's
``text/event-stream`` endpoint and hands each decoded event to a callback on
the event loop, which is how the push-based signal reaches the store.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from typing import Any

import requests

from ..identity.opencode import OpenCodeSession
from ..reconcile.inflight import InFlightSignal
from .sessions import OpenCodeApiSnapshot

logger = logging.getLogger(__name__)

USER_AGENT = "agentpulse"
EVENT_ENDPOINTS = ("/global/event", "/event")
USER_MESSAGE_IN_FLIGHT_MS = 2_500
MAX_ACTIVITY_CHECKS = 8

_JSON_HEADERS = {"Accept": "application/json", "User-Agent": USER_AGENT}
_STREAM_HEADERS = {"Accept": "text/event-stream", "User-Agent": USER_AGENT}

# Reachable, but nothing usable in the body.
_NOT_JSON = object()


def _now_ms() -> float:
    return time.time() * 1000


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def session_records(payload: Any) -> list[Any]:
    """Session records from a bare list or a ``sessions``/``data`` envelope."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("sessions", "data"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


def message_activity(
    messages: Any, now: float, *, user_window_ms: float = USER_MESSAGE_IN_FLIGHT_MS
) -> InFlightSignal:
    """Poll-based in-flight state from a session's message list.

    The session is in flight while its latest assistant message has no
    completion time or has a tool part still pending or running. A user
    message newer than every reply counts as in flight for ``user_window_ms``,
    covering the gap before the assistant message appears.
    """
    if not isinstance(messages, list):
        return InFlightSignal(False)
    latest_activity: float | None = None
    latest_at: float | None = None
    latest_role: str | None = None
    assistant: dict[str, Any] | None = None
    assistant_created: float | None = None
    assistant_completed: float | None = None

    for message in messages:
        if not isinstance(message, dict):
            continue
        info = message.get("info") if isinstance(message.get("info"), dict) else {}
        times = info.get("time") if isinstance(info.get("time"), dict) else {}
        created = _number(times.get("created"))
        completed = _number(times.get("completed"))
        for value in (created, completed):
            if value is not None and (latest_activity is None or value > latest_activity):
                latest_activity = value
        at = completed if completed is not None else created
        if at is not None and (latest_at is None or at > latest_at):
            latest_at, latest_role = at, info.get("role")
        if info.get("role") == "assistant" and (
            assistant is None
            or (created is not None and (assistant_created is None or created > assistant_created))
        ):
            assistant, assistant_created, assistant_completed = message, created, completed

    recent_prompt = (
        latest_role == "user"
        and latest_at is not None
        and user_window_ms > 0
        and now - latest_at <= user_window_ms
    )
    if assistant is None:
        return InFlightSignal(recent_prompt, latest_activity)

    parts = assistant.get("parts") if isinstance(assistant.get("parts"), list) else []
    pending_tool = any(
        isinstance(part, dict)
        and part.get("type") == "tool"
        and isinstance(part.get("state"), dict)
        and part["state"].get("status") in ("pending", "running")
        for part in parts
    )
    in_flight = pending_tool or assistant_completed is None or recent_prompt
    return InFlightSignal(in_flight, latest_activity)


class HttpOpenCodeApiFeed:
    """Poll ``GET /session`` on the local server.

    Usage::

        feed = HttpOpenCodeApiFeed("127.0.0.1", 4096)
        snapshot = feed.fetch()

    A transport failure reports the server unreachable; an HTTP error or a
    non-JSON body reports it reachable with no sessions. Message history is
    only fetched for the most recently active top-level sessions.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: float = 4096,
        *,
        timeout_ms: float = 5_000,
        activity_window_ms: float = 600_000,
        max_activity_checks: int = MAX_ACTIVITY_CHECKS,
        http: requests.Session | None = None,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.base_url = f"http://{host}:{int(port)}"
        self._timeout = max(timeout_ms, 1) / 1000
        self._activity_window_ms = activity_window_ms
        self._max_activity_checks = max_activity_checks
        self._http = http or requests.Session()
        self._clock = clock

    def fetch(self) -> OpenCodeApiSnapshot:
        payload = self._get_json("/session")
        if payload is None:
            return OpenCodeApiSnapshot(reachable=False)
        if payload is _NOT_JSON:
            return OpenCodeApiSnapshot(reachable=True)

        sessions = [
            session
            for session in (OpenCodeSession.from_api(r) for r in session_records(payload))
            if session is not None
        ]
        now = self._clock()
        in_flight: dict[str, InFlightSignal] = {}
        active_ids_by_dir: dict[str, list[str]] = {}
        for session in self._activity_candidates(sessions, now):
            signal = self.session_activity(session.id, now)
            if signal is None:
                continue
            in_flight[session.id] = signal
            if signal.in_flight and session.directory:
                active_ids_by_dir.setdefault(session.directory, []).append(session.id)
        return OpenCodeApiSnapshot(
            reachable=True,
            sessions=sessions,
            in_flight=in_flight,
            active_ids_by_dir=active_ids_by_dir,
        )

    def session_activity(self, session_id: str, now: float | None = None) -> InFlightSignal | None:
        """In-flight signal for one session, or None when it could not be read."""
        messages = self._get_json(f"/session/{session_id}/message")
        if messages is None or messages is _NOT_JSON:
            return None
        return message_activity(messages, self._clock() if now is None else now)

    def _activity_candidates(
        self, sessions: list[OpenCodeSession], now: float
    ) -> list[OpenCodeSession]:
        recent: list[tuple[float, OpenCodeSession]] = []
        for session in sessions:
            if session.is_child:
                continue
            at = session.activity_at()
            if at is None or now - at > self._activity_window_ms:
                continue
            recent.append((at, session))
        recent.sort(key=lambda item: item[0], reverse=True)
        return [session for _, session in recent[: self._max_activity_checks]]

    def _get_json(self, path: str) -> Any:
        try:
            response = self._http.get(
                f"{self.base_url}{path}", headers=_JSON_HEADERS, timeout=self._timeout
            )
        except requests.RequestException as e:
            logger.debug("Server API unreachable at %s%s: %s", self.base_url, path, e)
            return None
        if not response.ok:
            logger.debug("Server API %s returned %s", path, response.status_code)
            return _NOT_JSON
        if "json" not in response.headers.get("content-type", ""):
            logger.debug("Server API %s returned non-JSON content", path)
            return _NOT_JSON
        try:
            return response.json()
        except ValueError:
            return _NOT_JSON


def iter_sse_events(lines: Iterable[str]) -> Iterator[tuple[str | None, str]]:
    """Group event-stream lines into ``(event name, data)`` pairs."""
    name: str | None = None
    data: list[str] = []
    for line in lines:
        if not line:
            if data:
                yield name, "\n".join(data)
            name, data = None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            name = value
        elif field == "data":
            data.append(value)
    if data:
        yield name, "\n".join(data)


def decode_stream_event(name: str | None, data: str) -> dict[str, Any] | None:
    """Flatten one stream event into the raw shape the event adapter reads."""
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed stream event: %.80s", data)
        return None
    if not isinstance(parsed, dict):
        return None
    raw = dict(parsed)
    if isinstance(parsed.get("payload"), dict):
        raw.update(parsed["payload"])
    if name and not raw.get("type"):
        raw["type"] = name
    return raw


class OpenCodeEventStream:
    """Follow the server's event stream and deliver events on the event loop.

    Usage::

        stream = OpenCodeEventStream("127.0.0.1", 4096, adapter.handle)
        task = asyncio.create_task(stream.run())
        # ... later ...
        stream.close()
        task.cancel()

    The blocking read runs on a worker thread; ``on_event`` is always called
    on the loop that awaited :meth:`run`.
    """

    def __init__(
        self,
        host: str,
        port: float,
        on_event: Callable[[dict[str, Any]], object],
        *,
        reconnect_ms: float = 10_000,
        connect_timeout_ms: float = 5_000,
        read_timeout_ms: float = 60_000,
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = f"http://{host}:{int(port)}"
        self._on_event = on_event
        self._reconnect_s = max(reconnect_ms, 0) / 1000
        self._timeout = (max(connect_timeout_ms, 1) / 1000, max(read_timeout_ms, 1) / 1000)
        self._http = http or requests.Session()
        self._closed = threading.Event()
        self._response: requests.Response | None = None

    async def run(self) -> None:
        """Follow the stream until closed or cancelled, reconnecting after drops."""
        loop = asyncio.get_running_loop()

        def deliver(raw: dict[str, Any]) -> None:
            if not self._closed.is_set():
                loop.call_soon_threadsafe(self._on_event, raw)

        try:
            while not self._closed.is_set():
                try:
                    await asyncio.to_thread(self.follow, deliver)
                except Exception as e:
                    if self._closed.is_set():
                        break
                    logger.debug("Event stream at %s dropped: %s", self.base_url, e)
                if self._closed.is_set():
                    break
                await asyncio.sleep(self._reconnect_s)
        except asyncio.CancelledError:
            pass
        finally:
            self.close()

    def follow(self, deliver: Callable[[dict[str, Any]], None]) -> bool:
        """Read one connection to completion; returns False when no endpoint answered."""
        for endpoint in EVENT_ENDPOINTS:
            if self._closed.is_set():
                return False
            response = self._http.get(
                f"{self.base_url}{endpoint}",
                headers=_STREAM_HEADERS,
                stream=True,
                timeout=self._timeout,
            )
            if not response.ok:
                response.close()
                continue
            logger.debug("Following server events at %s%s", self.base_url, endpoint)
            response.encoding = "utf-8"
            self._response = response
            try:
                lines = response.iter_lines(decode_unicode=True)
                for name, data in iter_sse_events(lines):
                    raw = decode_stream_event(name, data)
                    if raw is not None:
                        deliver(raw)
            finally:
                self._response = None
                response.close()
            return True
        logger.debug("No event stream endpoint answered at %s", self.base_url)
        return False

    def close(self) -> None:
        self._closed.set()
        response = self._response
        if response is not None:
            # Unblocks a worker thread parked in iter_lines.
            response.close()
