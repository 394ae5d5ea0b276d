"""Append-only JSON Lines event sink with rotation and a hash chain.

Each record carries ``prev_hash``, the SHA-256 of the previous raw line, so
editing or dropping a line is detectable with ``validate_event_chain``. A
rotated file starts a fresh chain.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from finhook.events.bus import Event
from finhook.locking import file_lock

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5


def _digest(line: str) -> str:
    return hashlib.sha256(line.encode()).hexdigest()


def _read_lines(path: Path) -> list[str]:
    return [line for line in path.read_text().splitlines() if line]


@dataclass
class ChainValidationResult:
    valid: bool
    records: int = 0
    broken_at_line: int | None = None


def validate_event_chain(log_path: Path) -> ChainValidationResult:
    if not log_path.exists():
        return ChainValidationResult(valid=True)
    previous: str | None = None
    lines = _read_lines(log_path)
    for number, line in enumerate(lines, start=1):
        if json.loads(line).get("prev_hash") != (_digest(previous) if previous else None):
            return ChainValidationResult(valid=False, records=len(lines), broken_at_line=number)
        previous = line
    return ChainValidationResult(valid=True, records=len(lines))


class EventLog:
    """Persists bus events; subscribe ``record`` to the bus with ``"*"``."""

    def __init__(
        self,
        log_path: str | Path,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        existing = _read_lines(self.log_path) if self.log_path.exists() else []
        self._tail: str | None = existing[-1] if existing else None

    @classmethod
    def from_env(cls, log_path: str) -> EventLog:
        return cls(
            log_path,
            max_bytes=int(os.environ.get("FINHOOK_EVENT_LOG_MAX_BYTES", DEFAULT_MAX_BYTES)),
            backup_count=int(os.environ.get("FINHOOK_EVENT_LOG_BACKUP_COUNT", DEFAULT_BACKUP_COUNT)),
        )

    def _generation(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _rotate_if_full(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return
        self._generation(self._backup_count).unlink(missing_ok=True)
        for index in reversed(range(1, self._backup_count)):
            older = self._generation(index)
            if older.exists():
                older.rename(self._generation(index + 1))
        self.log_path.rename(self._generation(1))
        self._tail = None

    def record(self, event: Event) -> None:
        with file_lock(self.log_path):
            self._rotate_if_full()
            entry = event.model_dump(mode="json")
            entry["prev_hash"] = _digest(self._tail) if self._tail is not None else None
            line = json.dumps(entry, separators=(",", ":"))
            with self.log_path.open("a") as f:
                f.write(line + "\n")
            self._tail = line

    def recent(self, limit: int = 20, event_type: str | None = None) -> list[dict[str, Any]]:
        """Newest-last slice of the current file, optionally one event type."""
        if not self.log_path.exists():
            return []
        with file_lock(self.log_path, shared=True):
            entries = [json.loads(line) for line in _read_lines(self.log_path)]
        if event_type is not None:
            entries = [e for e in entries if e.get("type") == event_type]
        return entries[-limit:] if limit > 0 else []
