"""File-based hook inbox shared by hook commands and the daemon.

Inbox file: ~/.config/agentpulse/inbox.jsonl (override via ``scan.inbox_file``)

Protocol:
- A provider hook runs ``agentpulse hook <provider>`` -> one JSON line is appended
  (``{"provider": ..., "received_at": ..., "payload": {...}}``)
- The daemon drains the file once per tick -> lines are read and the file is
  truncated under the same lock, so no line is delivered twice
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows fallback
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InboxEntry:
    """One hook delivery waiting for the daemon."""

    provider: str
    payload: dict[str, Any]
    received_at: float

    def to_json(self) -> str:
        return json.dumps(
            {"provider": self.provider, "received_at": self.received_at, "payload": self.payload}
        )

    @classmethod
    def from_json(cls, line: str) -> InboxEntry | None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        provider = data.get("provider")
        payload = data.get("payload")
        received_at = data.get("received_at")
        if not isinstance(provider, str) or not isinstance(payload, dict):
            return None
        if isinstance(received_at, bool) or not isinstance(received_at, (int, float)):
            received_at = 0.0
        return cls(provider=provider, payload=payload, received_at=float(received_at))


class HookInbox:
    """Append-only JSON-lines queue guarded by an advisory file lock."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def append(
        self, provider: str, payload: dict[str, Any], received_at: float | None = None
    ) -> InboxEntry:
        """Queue a payload for the daemon."""
        entry = InboxEntry(
            provider=provider,
            payload=payload,
            received_at=time.time() * 1000 if received_at is None else received_at,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a+", encoding="utf-8") as f:
            self._lock_file(f)
            try:
                f.write(entry.to_json())
                f.write("\n")
                f.flush()
            finally:
                self._unlock_file(f)
        return entry

    def drain(self) -> list[InboxEntry]:
        """Read and clear every queued entry; corrupt lines are dropped."""
        if not self.path.exists():
            return []

        try:
            with self.path.open("a+", encoding="utf-8") as f:
                self._lock_file(f)
                try:
                    f.seek(0)
                    lines = f.read().splitlines()
                    f.seek(0)
                    f.truncate(0)
                    f.flush()
                finally:
                    self._unlock_file(f)
        except OSError as e:
            logger.warning("Could not drain hook inbox %s: %s", self.path, e)
            return []

        entries: list[InboxEntry] = []
        for line in lines:
            if not line.strip():
                continue
            entry = InboxEntry.from_json(line)
            if entry is None:
                logger.debug("Dropping malformed inbox line: %.80s", line)
                continue
            entries.append(entry)
        return entries

    def _lock_file(self, file_obj: object) -> None:
        if fcntl is None:
            return
        fcntl.flock(file_obj.fileno(), fcntl.LOCK_EX)  # type: ignore[union-attr]

    def _unlock_file(self, file_obj: object) -> None:
        if fcntl is None:
            return
        fcntl.flock(file_obj.fileno(), fcntl.LOCK_UN)  # type: ignore[union-attr]
