"""One scan tick: processes in, deduplicated agent snapshots out.

For every process that looks like a supported agent the scanner resolves a
stable logical identity (pins, session files, server sessions, hook state),
derives an activity verdict with the provider's rule set, and projects the
result into an :class:`AgentSnapshot`. Everything that must survive between
ticks (pins, CPU sustain windows, hold memory) is owned by the scanner
instance, so several scanners can run side by side in tests.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import psutil

from ..activity.cpu import CpuSustainTracker
from ..activity.machine import (
    StateResult,
    derive_claude_state,
    derive_codex_state,
    derive_opencode_state,
)
from ..config import MonitorConfig
from ..core.events import AgentMeta
from ..identity.codex import (
    SessionFile,
    SessionSelection,
    derive_session_identity,
    normalize_session_path,
    select_codex_session,
)
from ..identity.opencode import OpenCodeSession, index_sessions, select_opencode_session
from ..identity.pins import PinDrop, SessionPinCache, is_start_mismatch
from ..providers.claude import ClaudeHookTracker, ClaudeSessionState, claude_agent_key
from ..providers.codex import CodexThreadTracker, LogSummary
from ..providers.commands import (
    Provider,
    RepoRootCache,
    codex_session_id_from_cmd,
    derive_title,
    detect_provider,
    infer_codex_kind,
    parse_claude_command,
    parse_codex_doing,
    parse_opencode_command,
    shorten_cmd,
)
from ..providers.opencode import OpenCodeEventAdapter, should_include_opencode_process
from ..reconcile.dedupe import dedupe_agents
from ..reconcile.inflight import resolve_in_flight
from ..types import AgentKind, AgentSnapshot, EventSummary, SnapshotPayload, WorkSummary
from .process import ProcessInfo, ProcessSource, PsutilProcessSource
from .sessions import (
    CodexSessionIndex,
    LogSummaryFeed,
    OpenCodeApiFeed,
    OpenCodeApiSnapshot,
    resolve_codex_home,
)

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


def compile_process_match(pattern: str | None) -> re.Pattern[str] | None:
    """Compile the user-supplied detection override; an invalid pattern is ignored."""
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning("Ignoring invalid process_match %r: %s", pattern, e)
        return None


@dataclass(slots=True)
class _ActivityMemory:
    start_ms: float | None
    last_active_at: float | None = None


@dataclass(slots=True)
class LoggedSession:
    """A resolved session log plus the pid-level metadata of its process."""

    identity: str
    summary: LogSummary
    process: AgentMeta


@dataclass(slots=True)
class ScanResult:
    """``listed`` is False when the process listing itself failed."""

    payload: SnapshotPayload
    pin_drops: list[PinDrop] = field(default_factory=list)
    logged_sessions: list[LoggedSession] = field(default_factory=list)
    listed: bool = True

    def claimed_identities(self) -> set[str]:
        return {agent.identity for agent in self.payload.agents if agent.identity}


@dataclass(slots=True)
class _Evidence:
    """Provider-specific findings for one process, before projection."""

    identity: str
    kind: AgentKind
    result: StateResult
    doing: str | None = None
    title: str | None = None
    session_path: str | None = None
    model: str | None = None
    last_event_at: float | None = None
    last_activity_at: float | None = None
    summary: WorkSummary | None = None
    events: tuple[EventSummary, ...] = ()


class AgentScanner:
    """Stateful per-tick scanner.

    Only ``process_source`` is required in practice; the session feeds and hook
    trackers are optional collaborators that sharpen identity and activity
    when present.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        *,
        process_source: ProcessSource | None = None,
        session_index: CodexSessionIndex | None = None,
        log_feed: LogSummaryFeed | None = None,
        opencode_api: OpenCodeApiFeed | None = None,
        opencode_events: OpenCodeEventAdapter | None = None,
        claude_hooks: ClaudeHookTracker | None = None,
        codex_threads: CodexThreadTracker | None = None,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.config = config or MonitorConfig()
        self._match_re = compile_process_match(self.config.scan.process_match)
        self.process_source = process_source or PsutilProcessSource(self.is_agent_process)
        self.session_index = session_index or CodexSessionIndex(
            resolve_codex_home(self.config.codex.home)
        )
        self.log_feed = log_feed
        self.opencode_api = opencode_api
        self.opencode_events = opencode_events
        self.claude_hooks = claude_hooks or ClaudeHookTracker(
            in_flight_timeout_ms=self.config.claude.in_flight_timeout_ms,
            event_ttl_ms=self.config.claude.event_ttl_ms,
        )
        self.codex_threads = codex_threads or CodexThreadTracker()
        self._clock = clock

        self.codex_pins = SessionPinCache(Provider.CODEX)
        self.opencode_pins = SessionPinCache(Provider.OPENCODE)
        self._cpu = CpuSustainTracker()
        self._memory: dict[int, _ActivityMemory] = {}
        self._repos = RepoRootCache()

    def is_agent_process(self, cmd: str, name: str) -> bool:
        """Whether a process is worth enriching (cwd, open files, CPU)."""
        return detect_provider(cmd, name, self._match_re) is not None

    # --- tick ---

    def scan(self, now: float | None = None) -> ScanResult:
        now = self._clock() if now is None else now
        try:
            processes = self.process_source.list_processes()
        except (psutil.Error, OSError) as e:
            # Keep pins and hold memory intact; the next tick retries.
            logger.warning("Process listing failed: %s", e)
            return ScanResult(SnapshotPayload(ts=now), listed=False)

        grouped: dict[Provider, list[ProcessInfo]] = {p: [] for p in Provider}
        for proc in processes:
            provider = detect_provider(proc.cmd, proc.name, self._match_re)
            if provider is not None:
                grouped[provider].append(proc)

        live = {proc.pid for procs in grouped.values() for proc in procs}
        self._forget_restarted(grouped)
        self._cpu.prune(live)
        for pid in list(self._memory):
            if pid not in live:
                del self._memory[pid]

        drops = self.codex_pins.prune(
            {p.pid for p in grouped[Provider.CODEX]},
            now=now,
            stale_file_ms=self.config.scan.stale_file_ms,
        )
        drops += self.opencode_pins.prune(
            {p.pid for p in grouped[Provider.OPENCODE]},
            now=now,
            stale_file_ms=0,
        )

        result = ScanResult(SnapshotPayload(ts=now), pin_drops=drops)
        agents: list[AgentSnapshot] = []
        agents += self._scan_codex(grouped[Provider.CODEX], now, result)
        agents += self._scan_opencode(grouped[Provider.OPENCODE], now)
        agents += self._scan_claude(grouped[Provider.CLAUDE], now)

        result.payload = SnapshotPayload(
            ts=now,
            agents=tuple(dedupe_agents(agents)),
            meta={"processes": len(live)},
        )
        return result

    def _forget_restarted(self, grouped: dict[Provider, list[ProcessInfo]]) -> None:
        for procs in grouped.values():
            for proc in procs:
                memory = self._memory.get(proc.pid)
                if memory is None or not is_start_mismatch(memory.start_ms, proc.started_at):
                    continue
                logger.debug("pid %d was reused; resetting cached state", proc.pid)
                del self._memory[proc.pid]
                self._cpu.forget(proc.pid)
                self.codex_pins.reset_on_restart(proc.pid, proc.started_at)
                self.opencode_pins.reset_on_restart(proc.pid, proc.started_at)

    # --- codex ---

    def _scan_codex(
        self, procs: list[ProcessInfo], now: float, result: ScanResult
    ) -> list[AgentSnapshot]:
        if not procs:
            return []
        self.session_index.refresh(now)
        cfg = self.config.codex
        used_session_paths: set[str] = set()
        agents: list[AgentSnapshot] = []

        # Processes with a pin or an explicit id claim their sessions first.
        def priority(proc: ProcessInfo) -> tuple[int, float, int]:
            explicit = proc.pid in self.codex_pins or bool(codex_session_id_from_cmd(proc.cmd))
            return (0 if explicit else 1, proc.started_at or 0, proc.pid)

        for proc in sorted(procs, key=priority):
            selection = self._select_codex(proc, used_session_paths)
            session = selection.session
            if session is not None:
                used_session_paths.add(normalize_session_path(session.path) or session.path)
                self.codex_pins.pin(
                    proc.pid,
                    now=now,
                    path=session.path,
                    session_id=session.session_id,
                    mtime_ms=session.mtime_ms,
                    start_ms=proc.started_at,
                )
            identity = derive_session_identity(
                Provider.CODEX,
                proc.pid,
                reuse_blocked=selection.reuse_blocked,
                session_id=session.session_id if session else None,
                session_path=session.path if session else None,
            )
            if selection.reuse_blocked:
                logger.debug("codex pid %d: session reuse blocked", proc.pid)

            summary = self._summarize(session)
            thread = self.codex_threads.get(session.session_id if session else None)
            in_flight = bool(summary and summary.in_flight) or bool(thread and thread.in_flight)
            last_activity_at = _latest(
                summary.last_activity_at if summary else None,
                thread.last_activity_at if thread else None,
            )
            cpu_active_ms = self._cpu.update(proc.pid, proc.cpu, cfg.cpu_threshold, now)
            ctx = cfg.context(
                now=now,
                cpu=proc.cpu,
                has_error=bool(summary and summary.has_error),
                last_activity_at=last_activity_at,
                in_flight=in_flight,
                last_in_flight_signal_at=last_activity_at,
                previous_active_at=self._previous_active(proc),
                cpu_active_ms=cpu_active_ms,
            )
            verdict = derive_codex_state(ctx)
            self._remember(proc, verdict)

            doing = (summary.doing if summary else None) or parse_codex_doing(proc.cmd)
            doing = doing or shorten_cmd(proc.cmd or proc.name)
            work = summary.summary if summary and summary.summary else WorkSummary(current=doing)
            evidence = _Evidence(
                identity=identity,
                kind=infer_codex_kind(proc.cmd),
                result=verdict,
                doing=doing,
                title=_strip_prompt(summary.title) if summary else None,
                session_path=session.path if session else None,
                model=summary.model if summary else None,
                last_event_at=summary.last_event_at if summary else None,
                last_activity_at=last_activity_at,
                summary=work,
                events=summary.events if summary else (),
            )
            snapshot = self._project(proc, Provider.CODEX, evidence)
            agents.append(snapshot)
            if summary is not None:
                result.logged_sessions.append(
                    LoggedSession(identity, summary, _process_meta(snapshot))
                )
        return agents

    def _select_codex(self, proc: ProcessInfo, used: set[str]) -> SessionSelection:
        index = self.session_index
        session_id = codex_session_id_from_cmd(proc.cmd)
        session_from_id = index.by_id(session_id)
        session_from_find = None
        if session_id and session_from_id is None:
            session_from_find = index.find(session_id)

        mapped: SessionFile | None = None
        sessions_dir = str(index.sessions_dir)
        for path in proc.open_files:
            if path.startswith(sessions_dir):
                mapped = index.stat(path)
                if mapped is not None:
                    break

        cached: SessionFile | None = None
        pin = self.codex_pins.get(proc.pid, proc.started_at)
        if pin is not None and pin.path:
            cached = index.stat(pin.path)
            if cached is None:
                # The file is gone; the pin can no longer be confirmed.
                self.codex_pins.unpin(proc.pid)

        return select_codex_session(
            cmd=proc.cmd,
            used_session_paths=used,
            session_id=session_id,
            session_from_id=session_from_id,
            session_from_find=session_from_find,
            mapped_session=mapped,
            cwd_session=index.by_cwd(proc.cwd),
            cached_session=cached,
        )

    def _summarize(self, session: SessionFile | None) -> LogSummary | None:
        if session is None or self.log_feed is None:
            return None
        try:
            return self.log_feed.summarize(session.path)
        except (OSError, ValueError) as e:
            logger.debug("Could not summarize %s: %s", session.path, e)
            return None

    # --- opencode ---

    def _fetch_opencode(self) -> OpenCodeApiSnapshot:
        if self.opencode_api is None:
            return OpenCodeApiSnapshot(reachable=False)
        try:
            return self.opencode_api.fetch()
        except (OSError, ValueError) as e:
            logger.debug("Server API unavailable: %s", e)
            return OpenCodeApiSnapshot(reachable=False)

    def _scan_opencode(self, procs: list[ProcessInfo], now: float) -> list[AgentSnapshot]:
        if not procs:
            return []
        cfg = self.config.opencode
        api = self._fetch_opencode()
        by_id, by_dir, by_pid = index_sessions(api.sessions)
        child_ids = {s.id for s in api.sessions if s.is_child}
        used: dict[str, int] = {}
        agents: list[AgentSnapshot] = []

        for proc in sorted(procs, key=lambda p: (p.pid not in self.opencode_pins, p.pid)):
            command = parse_opencode_command(proc.cmd)
            kind = command.kind if command else AgentKind.UNKNOWN

            session: OpenCodeSession | None = None
            session_id: str | None = None
            if not kind.is_server:
                pin = self.opencode_pins.get(proc.pid, proc.started_at)
                selection = select_opencode_session(
                    pid=proc.pid,
                    directory=proc.cwd,
                    sessions_by_id=by_id,
                    sessions_by_dir=by_dir,
                    used=used,
                    session_by_pid=by_pid.get(proc.pid),
                    cached_session_id=pin.session_id if pin else None,
                    active_ids_by_dir=api.active_ids_by_dir,
                    child_ids=child_ids,
                )
                session, session_id = selection.session, selection.session_id
                if session_id:
                    self.opencode_pins.pin(
                        proc.pid, now=now, session_id=session_id, start_ms=proc.started_at
                    )

            sse = (
                self.opencode_events.signal(session_id)
                if self.opencode_events is not None and session_id
                else None
            )
            api_signal = api.in_flight.get(session_id) if session_id else None
            if not should_include_opencode_process(
                kind=kind,
                api_available=api.reachable,
                has_session=session_id is not None,
                has_event_activity=sse is not None,
                cpu=proc.cpu,
                cpu_threshold=cfg.cpu_threshold,
            ):
                continue

            fused = resolve_in_flight(sse=sse, api=api_signal)
            last_activity_at = _latest(
                session.activity_at() if session else None,
                sse.last_activity_at if sse else None,
                api_signal.last_activity_at if api_signal else None,
            )
            cpu_active_ms = self._cpu.update(proc.pid, proc.cpu, cfg.cpu_threshold, now)
            ctx = cfg.context(
                now=now,
                cpu=proc.cpu,
                last_activity_at=last_activity_at,
                in_flight=fused.in_flight,
                last_in_flight_signal_at=last_activity_at,
                previous_active_at=self._previous_active(proc),
                cpu_active_ms=cpu_active_ms,
            )
            verdict = derive_opencode_state(
                ctx, status=session.status if session else None, is_server=kind.is_server
            )
            self._remember(proc, verdict)

            if kind.is_server:
                identity = f"{Provider.OPENCODE}:server:{proc.pid}"
            elif session_id:
                identity = f"{Provider.OPENCODE}:{session_id}"
            else:
                identity = f"{Provider.OPENCODE}:pid:{proc.pid}"
            doing = command.doing if command else shorten_cmd(proc.cmd or proc.name)
            evidence = _Evidence(
                identity=identity,
                kind=kind,
                result=verdict,
                doing=doing,
                title=session.title if session else None,
                model=session.model if session else None,
                last_event_at=session.updated_at if session else None,
                last_activity_at=last_activity_at,
                summary=WorkSummary(current=doing),
            )
            agents.append(self._project(proc, Provider.OPENCODE, evidence))
        return agents

    # --- claude ---

    def _scan_claude(self, procs: list[ProcessInfo], now: float) -> list[AgentSnapshot]:
        if not procs:
            return []
        cfg = self.config.claude
        claimed: set[str] = set()
        agents: list[AgentSnapshot] = []

        for proc in sorted(procs, key=lambda p: p.pid):
            command = parse_claude_command(proc.cmd)
            kind = command.kind if command else AgentKind.CLAUDE_TUI
            hooks = self._claude_hooks_for(proc, command.session_id if command else None, now)
            if hooks is not None and hooks.session_id in claimed:
                hooks = None
            if hooks is not None:
                claimed.add(hooks.session_id)

            tui_without_hooks = hooks is None and kind is AgentKind.CLAUDE_TUI
            threshold = cfg.tui_cpu_threshold if tui_without_hooks else cfg.cpu_threshold
            cpu_active_ms = self._cpu.update(proc.pid, proc.cpu, threshold, now)
            last_activity_at = hooks.last_activity_at if hooks else proc.started_at
            ctx = cfg.context(
                tui_without_hooks=tui_without_hooks,
                now=now,
                cpu=proc.cpu,
                last_activity_at=last_activity_at,
                in_flight=bool(hooks and hooks.in_flight),
                last_in_flight_signal_at=hooks.last_activity_at if hooks else None,
                previous_active_at=self._previous_active(proc),
                cpu_active_ms=cpu_active_ms,
            )
            verdict = derive_claude_state(ctx, start_grace_ms=cfg.start_grace_ms)
            self._remember(proc, verdict)

            identity = (
                claude_agent_key(hooks.session_id)
                if hooks
                else f"{Provider.CLAUDE}:pid:{proc.pid}"
            )
            doing = command.doing if command else shorten_cmd(proc.cmd or proc.name)
            evidence = _Evidence(
                identity=identity,
                kind=kind,
                result=verdict,
                doing=doing,
                session_path=hooks.transcript_path if hooks else None,
                model=command.model if command else None,
                last_event_at=hooks.last_seen_at if hooks else None,
                last_activity_at=hooks.last_activity_at if hooks else None,
                summary=WorkSummary(
                    current=doing, last_prompt=command.prompt if command else None
                ),
            )
            agents.append(self._project(proc, Provider.CLAUDE, evidence))
        return agents

    def _claude_hooks_for(
        self, proc: ProcessInfo, session_id: str | None, now: float
    ) -> ClaudeSessionState | None:
        if session_id:
            state = self.claude_hooks.by_session(session_id, now)
            if state is not None:
                return state
        return self.claude_hooks.by_cwd(proc.cwd, now)

    # --- shared ---

    def _previous_active(self, proc: ProcessInfo) -> float | None:
        memory = self._memory.get(proc.pid)
        return memory.last_active_at if memory else None

    def _remember(self, proc: ProcessInfo, verdict: StateResult) -> None:
        memory = self._memory.setdefault(proc.pid, _ActivityMemory(start_ms=proc.started_at))
        if memory.start_ms is None:
            memory.start_ms = proc.started_at
        if verdict.last_active_at is not None:
            memory.last_active_at = verdict.last_active_at

    def _project(self, proc: ProcessInfo, provider: Provider, evidence: _Evidence) -> AgentSnapshot:
        repo_root = self._repos.find(proc.cwd)
        repo = os.path.basename(repo_root) if repo_root else None
        cmd = proc.cmd or proc.name
        return AgentSnapshot(
            id=str(proc.pid),
            pid=proc.pid,
            kind=evidence.kind,
            state=evidence.result.state,
            cmd=cmd,
            cmd_short=shorten_cmd(cmd),
            cpu=proc.cpu,
            mem=proc.mem,
            identity=evidence.identity,
            started_at=proc.started_at,
            last_event_at=evidence.last_event_at,
            last_activity_at=evidence.last_activity_at,
            activity_reason=evidence.result.reason,
            title=evidence.title or derive_title(evidence.doing, repo, provider, proc.pid),
            doing=evidence.doing,
            session_path=evidence.session_path,
            repo=repo,
            cwd=proc.cwd,
            model=evidence.model,
            summary=evidence.summary,
            events=evidence.events,
        )


def _latest(*values: float | None) -> float | None:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _strip_prompt(title: str | None) -> str | None:
    if not title:
        return None
    return re.sub(r"^prompt:\s*", "", title, flags=re.IGNORECASE).strip() or None


def _process_meta(snapshot: AgentSnapshot) -> AgentMeta:
    return AgentMeta(
        pid=snapshot.pid,
        kind=snapshot.kind,
        cmd=snapshot.cmd,
        cmd_short=snapshot.cmd_short,
        cwd=snapshot.cwd,
        repo=snapshot.repo,
        cpu=snapshot.cpu,
        mem=snapshot.mem,
        started_at=snapshot.started_at,
    )
