"""
core/logger.py — JSONL structured telemetry logger for Sentinel Guardian.

Every entry is one JSON object on its own line in
``<log_dir>/guardian_{YYYY-MM-DD}.jsonl``; the file rolls over at UTC
midnight. WARN and above are echoed to stderr through stdlib logging.

The directory is taken from :func:`configure_logger` when the CLI calls it,
otherwise from ``GUARDIAN_LOG_DIR`` (default ``logs``).

Usage::

    from core.logger import get_logger
    log = get_logger()
    log.info("gateway", "call_started", {"attempt": 1})
    log.perf("pipeline", "analysis_done", latency_ms=1240.5, data={"state": "SAFE"})
"""

from __future__ import annotations

import json
import logging
import os
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TextIO

# ── stderr mirror ─────────────────────────────────────────────
_stdlib = logging.getLogger("guardian")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s — %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.DEBUG)
_stdlib.propagate = False

_instance: Optional["GuardianLogger"] = None
_instance_lock = threading.Lock()


def _env_log_dir() -> Path:
    return Path(os.environ.get("GUARDIAN_LOG_DIR", "logs"))


class GuardianLogger:
    """
    Append-only JSONL telemetry sink shared by the whole process.

    A record looks like:

    .. code-block:: json

        {
          "timestamp_iso": "2026-02-25T01:20:49.123456+00:00",
          "level": "ERROR",
          "phase": "gateway",
          "event": "call_failed",
          "data": {"message": "503 Service Unavailable", "retries_left": 1},
          "latency_ms": 1240.5
        }

    ``latency_ms`` only appears on PERF records. Obtain the shared instance
    with :func:`get_logger`; construct directly only in tests.

    Args:
        log_dir: Directory for the daily files (created on demand).
    """

    def __init__(self, log_dir: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._log_dir = log_dir if log_dir is not None else _env_log_dir()
        self._file: Optional[TextIO] = None
        self._day = ""
        with self._lock:
            self._roll(datetime.now(tz=timezone.utc))
        self.info("system", "startup", {
            "python_version": sys.version,
            "platform": platform.platform(),
            "timestamp_local": datetime.now().isoformat(),
        })

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    # ── Levels ────────────────────────────────────────────────

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._emit("DEBUG", phase, event, data)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Record a routine event.

        Args:
            phase: Subsystem, e.g. ``'gateway'`` or ``'pipeline'``.
            event: Snake-case event name, e.g. ``'call_started'``.
            data: Extra context; must be JSON-serialisable or str()-able.
        """
        self._emit("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._emit("WARN", phase, event, data, mirror=logging.WARNING)

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._emit("ERROR", phase, event, data, mirror=logging.ERROR)

    def critical(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._emit("CRITICAL", phase, event, data, mirror=logging.CRITICAL)

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """Record a latency measurement (rounded to microseconds)."""
        self._emit("PERF", phase, event, data, latency_ms=latency_ms)

    # ── File handling ─────────────────────────────────────────

    def flush(self) -> None:
        with self._lock:
            if self._file is not None and not self._file.closed:
                self._file.flush()

    def close(self) -> None:
        with self._lock:
            if self._file is not None and not self._file.closed:
                self._file.close()

    def _emit(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
        mirror: Optional[int] = None,
    ) -> None:
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._roll(now)
            if self._file is not None and not self._file.closed:
                self._file.write(line + "\n")

        if mirror is not None:
            _stdlib.log(mirror, "[%s] %s | %s", phase, event, data or {})

    def _roll(self, now: datetime) -> None:
        """Switch to the file for ``now``'s date. Caller holds the lock."""
        day = now.strftime("%Y-%m-%d")
        if day == self._day:
            return
        if self._file is not None and not self._file.closed:
            self._file.close()
        self._day = day
        self._log_dir.mkdir(parents=True, exist_ok=True)
        # Line-buffered so a crash loses at most the current record
        self._file = open(self._log_dir / f"guardian_{day}.jsonl", "a", encoding="utf-8", buffering=1)


# ── Process-wide access ───────────────────────────────────────

def get_logger() -> GuardianLogger:
    """Return the shared :class:`GuardianLogger`, creating it on first use."""
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = GuardianLogger()
    return _instance


def configure_logger(log_dir: Path | str | None = None, stderr_level: str = "INFO") -> GuardianLogger:
    """
    Point the shared logger at ``log_dir`` and set the stderr threshold.

    Modules bind the logger at import time, so the directory can only be
    chosen before the first :func:`get_logger` call; afterwards the existing
    instance is kept and only the stderr level changes.
    """
    global _instance
    _set_stderr_level(stderr_level)
    with _instance_lock:
        if _instance is None:
            _instance = GuardianLogger(Path(log_dir) if log_dir is not None else None)
    return _instance


def _set_stderr_level(level: str) -> None:
    """Minimum level echoed to stderr: ``DEBUG``, ``INFO``, ``WARN`` or ``ERROR``."""
    name = level.upper()
    if name == "WARN":
        name = "WARNING"
    _stdlib.setLevel(getattr(logging, name, logging.INFO))
