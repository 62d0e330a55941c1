"""
pipeline/transcript.py — Append-only conversation transcript.

Holds the user/assistant/system entries shown in the activity log. Entries
are immutable and never reordered or removed while a session runs; only
:meth:`TranscriptLog.clear` (an explicit session reset) empties it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from core.constants import LogKind


@dataclass(frozen=True)
class LogEntry:
    """One transcript line."""

    kind: LogKind
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "message": self.message,
            "at": self.at.isoformat(),
        }


class TranscriptLog:
    """Thread-safe append-only list of :class:`LogEntry`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = []

    def append(self, kind: LogKind, message: str) -> LogEntry:
        entry = LogEntry(kind=kind, message=message)
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self, kind: Optional[LogKind] = None) -> list[LogEntry]:
        """Return a copy of the entries, optionally filtered by kind."""
        with self._lock:
            items = list(self._entries)
        if kind is None:
            return items
        return [e for e in items if e.kind is kind]

    def messages(self, kind: Optional[LogKind] = None) -> list[str]:
        return [e.message for e in self.entries(kind)]

    def to_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.entries()]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries())
