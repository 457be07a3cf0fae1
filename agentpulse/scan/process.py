"""Process observations and the psutil-backed feed that produces them."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import psutil

logger = logging.getLogger(__name__)

ProcessFilter = Callable[[str, str], bool]


@dataclass(frozen=True, slots=True)
class ProcessInfo:
    """One process as seen on one scan tick; ``started_at`` is epoch ms."""

    pid: int
    cmd: str = ""
    name: str = ""
    ppid: int | None = None
    cwd: str | None = None
    cpu: float = 0.0
    mem: float = 0.0
    started_at: float | None = None
    open_files: tuple[str, ...] = ()


@runtime_checkable
class ProcessSource(Protocol):
    """Supplier of process observations for one tick."""

    def list_processes(self) -> list[ProcessInfo]:
        ...


class PsutilProcessSource:
    """Enumerate processes with psutil, enriching only those ``match`` accepts.

    ``Process`` handles are kept between calls so ``cpu_percent`` measures the
    interval since the previous tick; the first sample of a new pid reads 0.
    """

    def __init__(self, match: ProcessFilter | None = None, *, file_suffix: str = ".jsonl") -> None:
        self._match = match
        self._file_suffix = file_suffix
        self._handles: dict[int, psutil.Process] = {}

    def list_processes(self) -> list[ProcessInfo]:
        results: list[ProcessInfo] = []
        seen: set[int] = set()
        for proc in psutil.process_iter(["pid", "ppid", "name", "cmdline"]):
            info = proc.info
            cmdline = info.get("cmdline") or []
            cmd = " ".join(cmdline)
            name = info.get("name") or ""
            if self._match is not None and not self._match(cmd, name):
                continue
            pid = info["pid"]
            seen.add(pid)
            observed = self._observe(pid, proc, cmd, name, info.get("ppid"))
            if observed is not None:
                results.append(observed)
        for pid in list(self._handles):
            if pid not in seen:
                del self._handles[pid]
        return results

    def _observe(
        self, pid: int, proc: psutil.Process, cmd: str, name: str, ppid: int | None
    ) -> ProcessInfo | None:
        handle = self._handles.get(pid)
        if handle is None or not handle.is_running():
            handle = proc
            self._handles[pid] = handle
        try:
            with handle.oneshot():
                cpu = handle.cpu_percent(None)
                mem = handle.memory_percent()
                started_at = handle.create_time() * 1000
                cwd = _safe(handle.cwd)
                open_files = tuple(
                    f.path
                    for f in (_safe(handle.open_files) or [])
                    if f.path.endswith(self._file_suffix)
                )
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            self._handles.pop(pid, None)
            return None
        except psutil.AccessDenied:
            logger.debug("Access denied reading pid %d", pid)
            return ProcessInfo(pid=pid, cmd=cmd, name=name, ppid=ppid)
        return ProcessInfo(
            pid=pid,
            cmd=cmd,
            name=name,
            ppid=ppid,
            cwd=cwd,
            cpu=cpu,
            mem=mem,
            started_at=started_at,
            open_files=open_files,
        )


def _safe(getter: Callable[[], Any]) -> Any:
    try:
        return getter()
    except (psutil.AccessDenied, psutil.ZombieProcess):
        return None


class StaticProcessSource:
    """Fixed list of observations, replaced wholesale with :meth:`set`."""

    def __init__(self, processes: list[ProcessInfo] | None = None) -> None:
        self._processes = list(processes or [])

    def set(self, processes: list[ProcessInfo]) -> None:
        self._processes = list(processes)

    def list_processes(self) -> list[ProcessInfo]:
        return list(self._processes)
