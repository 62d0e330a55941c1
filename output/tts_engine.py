"""
output/tts_engine.py — Offline speech sinks.

:class:`TTSEngine` wraps pyttsx3 in a daemon worker thread. Speech follows
cancel-and-replace semantics: a new utterance interrupts whatever is being
spoken, and only the latest pending text is ever voiced.

:class:`LogSpeech` is the silent sink used with ``--no-voice`` and in tests;
it records utterances and writes them to the telemetry log.
"""

from __future__ import annotations

import threading
import time
from typing import Optional, Protocol

import pyttsx3  # type: ignore[import]

from core.config import TTSConfig
from core.logger import get_logger

_log = get_logger()


class SpeechSink(Protocol):
    """Anything that can voice text with cancel-and-replace semantics."""

    def speak(self, text: str) -> None: ...

    def cancel(self) -> None: ...


# ──────────────────────────────────────────────────────────────
# TTSEngine
# ──────────────────────────────────────────────────────────────

class TTSEngine:
    """
    Non-blocking pyttsx3 speech sink.

    The pyttsx3 engine is not thread-safe, so it is created and driven only
    by the worker thread; callers only swap the pending text.

    Args:
        config: TTS configuration (rate, volume, voice selection).
    """

    def __init__(self, config: TTSConfig) -> None:
        self._cfg = config
        self._lock = threading.Lock()
        self._pending_text: Optional[str] = None
        self._speaking = False
        self._shutdown_flag = False
        self._wake = threading.Event()

        self._engine: Optional[pyttsx3.Engine] = None
        self._init_engine()

        self._worker_thread = threading.Thread(
            target=self._worker_loop, name="tts-worker", daemon=True
        )
        self._worker_thread.start()

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def speak(self, text: str) -> None:
        """
        Queue text for speech, interrupting any in-progress utterance.

        Args:
            text: The sentence to speak. Empty text is ignored.
        """
        text = (text or "").strip()
        if not text:
            return

        with self._lock:
            self._pending_text = text
            if self._speaking:
                self._stop_engine()
        self._wake.set()

        _log.info("tts_engine", "enqueued", {"text_len": len(text)})

    def cancel(self) -> None:
        """Drop pending speech and stop the current utterance."""
        with self._lock:
            self._pending_text = None
            if self._speaking:
                self._stop_engine()
        _log.info("tts_engine", "cancelled", {})

    @property
    def is_speaking(self) -> bool:
        with self._lock:
            return self._speaking

    @property
    def available(self) -> bool:
        """False when the platform speech backend failed to initialise."""
        return self._engine is not None

    def shutdown(self) -> None:
        """
        Stop the worker thread and release the engine.

        Safe to call multiple times. Blocks until the worker exits (max 3s).
        """
        self._shutdown_flag = True
        self._wake.set()
        if self._worker_thread.is_alive():
            self._worker_thread.join(timeout=3.0)
        with self._lock:
            self._stop_engine()
        _log.info("tts_engine", "shutdown", {})

    # ──────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────

    def _init_engine(self) -> None:
        try:
            engine = pyttsx3.init()
            engine.setProperty("rate", self._cfg.rate)
            engine.setProperty("volume", self._cfg.volume)
            if self._cfg.voice_id:
                engine.setProperty("voice", self._cfg.voice_id)
            self._engine = engine
            _log.info("tts_engine", "engine_ready", {
                "rate": self._cfg.rate,
                "volume": self._cfg.volume,
            })
        except Exception as exc:  # noqa: BLE001
            _log.error("tts_engine", "engine_init_failed", {"error": str(exc)})
            self._engine = None

    def _stop_engine(self) -> None:
        """Interrupt the engine. Caller holds ``self._lock``."""
        if self._engine is None:
            return
        try:
            self._engine.stop()
        except Exception as exc:  # noqa: BLE001
            _log.warn("tts_engine", "stop_failed", {"error": str(exc)})

    def _worker_loop(self) -> None:
        """Speak the latest pending text until shutdown."""
        while not self._shutdown_flag:
            self._wake.wait(timeout=0.05)
            self._wake.clear()

            with self._lock:
                text = self._pending_text
                self._pending_text = None
                if text is not None and self._engine is not None:
                    self._speaking = True

            if text is None or self._engine is None:
                continue

            t0 = time.monotonic()
            try:
                self._engine.say(text)
                self._engine.runAndWait()
            except Exception as exc:  # noqa: BLE001
                _log.error("tts_engine", "speak_error", {"error": str(exc)})
            finally:
                with self._lock:
                    self._speaking = False
            _log.perf("tts_engine", "spoken", (time.monotonic() - t0) * 1000.0, {
                "text_len": len(text),
            })


# ──────────────────────────────────────────────────────────────
# LogSpeech
# ──────────────────────────────────────────────────────────────

class LogSpeech:
    """Speech sink that only records utterances (``--no-voice``, tests)."""

    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.cancelled: int = 0

    def speak(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        self.spoken.append(text)
        _log.info("tts_engine", "speak_logged", {"text": text})

    def cancel(self) -> None:
        self.cancelled += 1

    @property
    def last(self) -> Optional[str]:
        return self.spoken[-1] if self.spoken else None
