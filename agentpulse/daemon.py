"""Monitor daemon: scan loop, hook intake and snapshot publication."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .config import MonitorConfig
from .core.events import AgentEvent, EventType
from .core.store import AgentStateStore
from .inbox import HookInbox, InboxEntry
from .providers.claude import ClaudeHookEvent, ClaudeHookTracker, claude_store_events
from .providers.codex import (
    CodexLogAdapter,
    CodexNotifyEvent,
    CodexThreadTracker,
    codex_notify_store_events,
)
from .providers.commands import Provider
from .providers.opencode import OpenCodeEventAdapter
from .reconcile.dedupe import dedupe_agents
from .scan.opencode_api import HttpOpenCodeApiFeed, OpenCodeEventStream
from .scan.scanner import AgentScanner, ScanResult
from .types import SnapshotPayload

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SnapshotPayload], None]

# Consecutive scans that must miss a hook-created agent before it is dropped.
ORPHAN_SCAN_LIMIT = 2


def _now_ms() -> float:
    return time.time() * 1000


def build_opencode_api(config: MonitorConfig) -> HttpOpenCodeApiFeed | None:
    """Session poller for the configured server, or None when disabled."""
    cfg = config.opencode
    if not cfg.api_enabled:
        return None
    return HttpOpenCodeApiFeed(
        cfg.host,
        cfg.port,
        timeout_ms=cfg.api_timeout_ms,
        activity_window_ms=cfg.activity_window_ms,
    )


def write_snapshot_file(path: str | Path, payload: SnapshotPayload) -> None:
    """Replace ``path`` with ``payload`` as JSON without exposing a partial file."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload.to_dict(), f)
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class MonitorDaemon:
    """Owns the store, the scanner and the provider adapters for one monitor.

    Usage::

        daemon = MonitorDaemon(MonitorConfig.load())
        daemon.add_listener(print)
        await daemon.run()

    Every tick drains the hook inbox, runs the process scan on a worker
    thread, feeds session-log summaries into the store, and publishes the
    scanner's view merged with the store's view. Store emissions between
    ticks (idle debounce, stale spans) are republished the same way.

    Agents created by hooks have no exit signal of their own; once
    ``ORPHAN_SCAN_LIMIT`` scans in a row find no process claiming them they
    are removed. While :meth:`run` is active the server's event stream is
    followed in a background task.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        *,
        scanner: AgentScanner | None = None,
        store: AgentStateStore | None = None,
        inbox: HookInbox | None = None,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.config = config or MonitorConfig()
        self._clock = clock
        self.store = store or AgentStateStore(
            idle_hold_ms=self.config.activity.idle_hold_ms,
            stale_span_ms=self.config.activity.stale_span_ms,
            clock=clock,
        )
        self.inbox = inbox or HookInbox(self.config.scan.inbox_file)
        self.claude_hooks = ClaudeHookTracker(
            in_flight_timeout_ms=self.config.claude.in_flight_timeout_ms,
            event_ttl_ms=self.config.claude.event_ttl_ms,
        )
        self.codex_threads = CodexThreadTracker()
        self.codex_logs = CodexLogAdapter()
        self.opencode_events = OpenCodeEventAdapter(
            self.store, idle_debounce_ms=self.config.opencode.idle_debounce_ms, clock=clock
        )
        self.scanner = scanner or AgentScanner(
            self.config,
            opencode_api=build_opencode_api(self.config),
            opencode_events=self.opencode_events,
            claude_hooks=self.claude_hooks,
            codex_threads=self.codex_threads,
            clock=clock,
        )
        self.opencode_stream: OpenCodeEventStream | None = None
        if self.config.opencode.events_enabled:
            self.opencode_stream = OpenCodeEventStream(
                self.config.opencode.host,
                self.config.opencode.port,
                self.opencode_events.handle,
                reconnect_ms=self.config.opencode.reconnect_ms,
            )
        # Store keys created by hooks, with how many scans in a row missed them.
        self._hook_keys: dict[str, int] = {}
        self._listeners: list[SnapshotListener] = []
        self._last_scan = SnapshotPayload(ts=0)
        self._latest: SnapshotPayload | None = None
        self._stop_event: asyncio.Event | None = None
        self._remove_store_listener = self.store.add_listener(self._on_store_snapshot)

    # --- listeners ---

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    @property
    def latest(self) -> SnapshotPayload | None:
        return self._latest

    # --- hooks ---

    def handle_hook(self, provider: str, payload: dict[str, Any], now: float | None = None) -> bool:
        """Apply one hook payload; returns False when it was dropped."""
        now = self._clock() if now is None else now
        if provider == Provider.CLAUDE:
            event = ClaudeHookEvent.from_payload(payload, now)
            if event is None:
                logger.debug("Dropping claude hook without event or session")
                return False
            self.claude_hooks.handle(event)
            self._ingest_hook_events(claude_store_events(event))
            return True
        if provider == Provider.CODEX:
            notify = CodexNotifyEvent.from_payload(payload, now)
            if notify is None:
                logger.debug("Dropping codex notify payload without type or thread")
                return False
            state = self.codex_threads.handle(notify)
            self._ingest_hook_events(codex_notify_store_events(notify, state))
            return True
        if provider == Provider.OPENCODE:
            return self.opencode_events.handle(payload)
        logger.warning("Dropping hook for unknown provider %r", provider)
        return False

    def _ingest_hook_events(self, events: list[AgentEvent]) -> None:
        for event in events:
            if event.type is EventType.PRESENCE_DOWN:
                self._hook_keys.pop(event.agent_key, None)
            else:
                self._hook_keys[event.agent_key] = 0
        self.store.ingest_many(events)

    def drain_inbox(self, now: float | None = None) -> int:
        """Apply every queued hook; returns how many were accepted."""
        entries: list[InboxEntry] = self.inbox.drain()
        accepted = 0
        for entry in entries:
            if self.handle_hook(entry.provider, entry.payload, entry.received_at or now):
                accepted += 1
        if entries:
            logger.debug("Drained %d hook(s), %d accepted", len(entries), accepted)
        return accepted

    # --- ticks ---

    async def tick(self) -> SnapshotPayload:
        now = self._clock()
        self.drain_inbox(now)
        result = await asyncio.to_thread(self.scanner.scan, now)
        self._ingest_logs(result, now)
        self._expire_orphans(result, now)
        self._last_scan = result.payload
        payload = self.merged_snapshot()
        self._publish(payload)
        return payload

    def _ingest_logs(self, result: ScanResult, now: float) -> None:
        seen: set[str] = set()
        for logged in result.logged_sessions:
            path = logged.summary.session_path
            seen.add(path)
            self.codex_logs.bind(path, logged.identity)
            self.store.ingest_many(
                self.codex_logs.events_for(logged.summary, now, process=logged.process)
            )
        for path in self.codex_logs.tracked_paths() - seen:
            self.store.ingest_many(self.codex_logs.forget(path, now))

    def _expire_orphans(self, result: ScanResult, now: float) -> None:
        """Drop hook-created agents that no running process has claimed lately."""
        if not result.listed:
            return
        claimed = result.claimed_identities()
        live = set(self.store.keys())
        for key, misses in list(self._hook_keys.items()):
            if key not in live:
                del self._hook_keys[key]
            elif key in claimed:
                self._hook_keys[key] = 0
            elif misses + 1 < ORPHAN_SCAN_LIMIT:
                self._hook_keys[key] = misses + 1
            else:
                logger.debug("No process claims %s; removing it", key)
                del self._hook_keys[key]
                self.store.ingest(AgentEvent(type=EventType.PRESENCE_DOWN, agent_key=key, ts=now))

    def merged_snapshot(self) -> SnapshotPayload:
        """Scanner agents and store agents, collapsed per logical agent."""
        store_payload = self.store.get_snapshot()
        agents = dedupe_agents([*self._last_scan.agents, *store_payload.agents])
        return SnapshotPayload(
            ts=self._clock(), agents=tuple(agents), meta=dict(self._last_scan.meta)
        )

    def _on_store_snapshot(self, _payload: SnapshotPayload) -> None:
        self._publish(self.merged_snapshot())

    def _publish(self, payload: SnapshotPayload) -> None:
        self._latest = payload
        snapshot_file = self.config.scan.snapshot_file
        if snapshot_file:
            try:
                write_snapshot_file(snapshot_file, payload)
            except OSError as e:
                logger.warning("Could not write snapshot file %s: %s", snapshot_file, e)
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.debug("Snapshot listener %r failed", listener, exc_info=True)

    # --- lifecycle ---

    async def run(self, *, max_ticks: int | None = None) -> None:
        """Run the scan loop until :meth:`stop` is called or ``max_ticks`` ran."""
        self._stop_event = asyncio.Event()
        interval = self.config.scan.interval_seconds
        ticks = 0
        stream_task = None
        if self.opencode_stream is not None:
            stream_task = asyncio.create_task(self.opencode_stream.run())
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception:
                    # One bad tick must not end monitoring.
                    logger.exception("Scan tick failed")
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.close()
            if stream_task is not None:
                stream_task.cancel()
                await asyncio.gather(stream_task, return_exceptions=True)

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def close(self) -> None:
        if self.opencode_stream is not None:
            self.opencode_stream.close()
        self._remove_store_listener()
        self.opencode_events.close()
        self.store.close()
