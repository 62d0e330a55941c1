"""
pipeline/controller.py — GuardianController: the analysis orchestrator.

Wires the sensors, the remote reasoning gateway, the response validator and
the safety state machine, and dispatches the resulting side effects::

    query ─► sensors ─► AnalysisRequest ─► Gateway ─► Validator ─► FSM
                                                                   │
                                      transcript ◄── speech ◄──────┘

All entry points are coroutines on one event loop. The in-flight latch is
checked and set before the first ``await``, so at most one analysis runs at
a time no matter how quickly triggers arrive. Side-effect sinks (speech,
notifier, siren, event subscribers) are called through guarded dispatch: a
failing sink is logged and never aborts the pipeline or leaves the latch set.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from core.config import GuardianConfig
from core.constants import (
    ANALYZING_MESSAGE,
    C,
    CRITICAL_PROMPT_MESSAGE,
    DEFAULT_TRANSCRIPT,
    EMERGENCY_PHRASES,
    FAILURE_SPOKEN_MESSAGE,
    FALLBACK_NOTICE,
    LOCKDOWN_ANNOUNCEMENT,
    QUERY_TOO_SHORT_MESSAGE,
    SAFETY_KEYWORDS,
    LogKind,
    SystemState,
)
from core.errors import GuardianError, MalformedResponseError
from core.fsm import SafetyStateMachine
from core.logger import get_logger
from input.audio_level import AmbientAudioMonitor
from input.sensors import FrameSource, GeoFix, LocationProvider
from llm.fallback import pick_fallback
from llm.gateway import ReasoningGateway
from llm.prompt_builder import AnalysisRequest, PromptBuilder
from output.emergency import EmergencyContext, Notifier, SirenSink
from output.tts_engine import SpeechSink
from pipeline.transcript import TranscriptLog
from safety.validator import AnalysisResult, ResponseValidator

_log = get_logger()

# ── EventBus event-name constants ─────────────────────────────────────────────

ON_STATE_CHANGE        = "ON_STATE_CHANGE"
"""Fired after every state transition, including reset."""

ON_LOG                 = "ON_LOG"
"""Fired for every transcript entry appended."""

ON_SPEAKING            = "ON_SPEAKING"
"""Fired just before text is handed to the speech sink."""

ON_CONFIRMATION_NEEDED = "ON_CONFIRMATION_NEEDED"
"""Fired when a CRITICAL result asks the user whether to alert the contact."""

ON_EMERGENCY           = "ON_EMERGENCY"
"""Fired once per LOCKDOWN entry, after the contact was notified."""

ON_FALLBACK            = "ON_FALLBACK"
"""Fired when a canned reply is used in place of a failed remote call."""


# ── GuardianController ────────────────────────────────────────────────────────

class GuardianController:
    """
    Analysis orchestrator for Sentinel Guardian.

    Every collaborator is injected; only ``gateway`` and ``speech`` are
    required. Missing sensors simply leave their request fields empty.

    Args:
        gateway: Remote reasoning gateway returning raw model text.
        speech: Speech sink with cancel-and-replace semantics.
        notifier: Emergency contact notifier (simulated SMS).
        siren: Siren actuator started on LOCKDOWN, stopped on reset.
        frame_source: Camera collector, or None for no image.
        location: Location provider, or None for no coordinates.
        audio: Ambient sound meter, or None.
        config: Loaded configuration (defaults when omitted).
        validator: Response validator (shared instance by default).
        prompt_builder: Prompt builder (default instance when omitted).
        rng: Random source for fallback selection (seeded in tests).

    Example::

        ctrl = GuardianController(gateway, speech=LogSpeech(), notifier=notifier, siren=siren)
        ctrl.subscribe(ON_STATE_CHANGE, lambda d: print(d["to"]))
        await ctrl.submit_query("Is it safe to walk here?")
    """

    def __init__(
        self,
        gateway: ReasoningGateway,
        speech: SpeechSink,
        notifier: Optional[Notifier] = None,
        siren: Optional[SirenSink] = None,
        frame_source: Optional[FrameSource] = None,
        location: Optional[LocationProvider] = None,
        audio: Optional[AmbientAudioMonitor] = None,
        config: Optional[GuardianConfig] = None,
        validator: Optional[ResponseValidator] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._cfg = config or GuardianConfig()
        self._gateway = gateway
        self._speech = speech
        self._notifier = notifier
        self._siren = siren
        self._frame_source = frame_source
        self._location = location
        self._audio = audio
        self._validator = validator or ResponseValidator()
        self._prompts = prompt_builder or PromptBuilder()
        self._rng = rng

        self._fsm = SafetyStateMachine(on_transition=self._on_fsm_transition)
        self._transcript = TranscriptLog()
        self._in_flight = False
        self._emergency: Optional[EmergencyContext] = None
        self._pending_prompt: Optional[str] = None
        self._lockdown_epoch = 0
        self._subscribers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = (
            defaultdict(list)
        )

        _log.info("pipeline", "controller_ready", {
            "camera": frame_source is not None,
            "location": location is not None,
            "audio": audio is not None,
            "use_fallback": self._cfg.analysis.use_fallback,
        })

    @classmethod
    def from_config(
        cls,
        config: GuardianConfig,
        *,
        voice: bool = True,
        camera: bool = True,
        gateway: Optional[ReasoningGateway] = None,
    ) -> "GuardianController":
        """
        Build a controller with the real device-backed collaborators.

        Device modules are imported lazily so headless runs never touch
        pyttsx3 or OpenCV.

        Args:
            config: Loaded configuration.
            voice: False routes speech to the telemetry log only.
            camera: False disables frame capture.
            gateway: Optional pre-built gateway (defaults to Gemini).
        """
        from input.sensors import FixedLocationProvider  # noqa: PLC0415
        from output.emergency import EmergencyContact, EmergencyNotifier, Siren  # noqa: PLC0415

        if voice:
            from output.tts_engine import TTSEngine  # noqa: PLC0415
            speech: SpeechSink = TTSEngine(config.tts)
        else:
            from output.tts_engine import LogSpeech  # noqa: PLC0415
            speech = LogSpeech()

        frame_source: Optional[FrameSource] = None
        if camera:
            from input.sensors import WebcamCapture  # noqa: PLC0415
            frame_source = WebcamCapture(config.sensors)

        return cls(
            gateway=gateway or ReasoningGateway.from_config(config.gateway),
            speech=speech,
            notifier=EmergencyNotifier(EmergencyContact.from_config(config.emergency)),
            siren=Siren(config.emergency),
            frame_source=frame_source,
            location=FixedLocationProvider.from_config(config.sensors),
            audio=AmbientAudioMonitor(),
            config=config,
        )

    # ── EventBus ──────────────────────────────────────────────────────────────

    def subscribe(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        """
        Register *callback* to receive payloads whenever *event* is published.

        Callbacks run synchronously in registration order; a raising callback
        is logged and does not affect the others.
        """
        self._subscribers[event].append(callback)
        _log.info("pipeline", "event_subscribed", {"event": event})

    def publish(self, event: str, data: Dict[str, Any]) -> None:
        for cb in self._subscribers.get(event, []):
            try:
                cb(data)
            except Exception as exc:  # noqa: BLE001
                _log.error("pipeline", "event_callback_error", {
                    "event": event,
                    "error": str(exc),
                })

    # ── Read-only views ───────────────────────────────────────────────────────

    @property
    def state(self) -> SystemState:
        return self._fsm.current_state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def transcript(self) -> TranscriptLog:
        return self._transcript

    @property
    def emergency_context(self) -> Optional[EmergencyContext]:
        return self._emergency

    @property
    def pending_prompt(self) -> Optional[str]:
        return self._pending_prompt

    @property
    def audio(self) -> Optional[AmbientAudioMonitor]:
        return self._audio

    @property
    def config(self) -> GuardianConfig:
        return self._cfg

    @property
    def gateway(self) -> ReasoningGateway:
        return self._gateway

    @property
    def validator(self) -> ResponseValidator:
        return self._validator

    @property
    def prompt_builder(self) -> PromptBuilder:
        return self._prompts

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe view of the orchestrator for the HTTP boundary."""
        return {
            "state": self.state.value,
            "in_flight": self._in_flight,
            "emergency": self._emergency.to_dict() if self._emergency else None,
            "pending_prompt": self._pending_prompt,
            "transcript": self._transcript.to_list(),
        }

    # ── Intake ────────────────────────────────────────────────────────────────

    async def submit_query(self, text: str) -> bool:
        """
        Record a typed or spoken query and analyse it when it is meaningful.

        A query is analysed if it mentions a safety keyword or is at least
        ``analysis.min_query_chars`` long.

        Returns:
            True if an analysis ran for this query.
        """
        text = (text or "").strip()
        if not text:
            return False

        self._append(LogKind.USER, text)
        lowered = text.lower()
        has_keyword = any(k in lowered for k in SAFETY_KEYWORDS)
        if has_keyword or len(text) >= self._cfg.analysis.min_query_chars:
            return await self.run_analysis(text)

        self._append(LogKind.SYSTEM, QUERY_TOO_SHORT_MESSAGE)
        return False

    async def handle_transcript(self, text: str) -> bool:
        """
        Route a voice transcript.

        A transcript containing an emergency phrase fires the manual
        emergency trigger; anything else is treated as a query.
        """
        text = (text or "").strip() or DEFAULT_TRANSCRIPT
        lowered = text.lower()
        if any(phrase in lowered for phrase in EMERGENCY_PHRASES):
            self._append(LogKind.USER, text)
            _log.warn("pipeline", "voice_emergency_phrase", {"text": text})
            return await self.trigger_emergency(source="voice")
        return await self.submit_query(text)

    # ── Analysis ──────────────────────────────────────────────────────────────

    async def run_analysis(self, query_text: str) -> bool:
        """
        Run one full analysis for ``query_text``.

        Sequence: frame capture → location fix (bounded) → request → gateway
        → validator → state machine → transcript and speech. Sensor failures
        are absorbed. Gateway and validation failures leave the state
        unchanged and produce one failure entry plus a spoken apology.

        Returns:
            True if the analysis ran, False if it was rejected because another
            analysis is in flight (or the query was empty).
        """
        if self._in_flight:
            _log.info("pipeline", "analysis_rejected_in_flight", {
                "query_len": len(query_text or ""),
            })
            return False
        query_text = (query_text or "").strip()
        if not query_text:
            return False

        # Latch set before the first await
        self._in_flight = True
        t0 = time.monotonic()
        outcome = "failed"
        try:
            self._append(LogKind.SYSTEM, ANALYZING_MESSAGE)
            request = await self._gather(query_text)
            result = await self._evaluate(request)
            if result is not None:
                self._on_result(result)
                outcome = "fallback" if result.is_fallback else "ok"
        finally:
            self._in_flight = False
            _log.perf("pipeline", "analysis_done", (time.monotonic() - t0) * 1000.0, {
                "outcome": outcome,
                "state": self.state.value,
            })
        return True

    async def _gather(self, query_text: str) -> AnalysisRequest:
        """Collect best-effort sensor data and assemble the request."""
        image: Optional[str] = None
        brightness: Optional[float] = None
        if self._frame_source is not None:
            try:
                frame = await self._frame_source.capture()
                image, brightness = frame.image_base64, frame.brightness
            except Exception as exc:  # noqa: BLE001
                _log.warn("sensors", "frame_unavailable", {"error": str(exc)})

        fix = await self._locate()
        sound_level = self._audio.level if self._audio is not None else None

        return AnalysisRequest(
            query_text=query_text,
            image_base64=image,
            latitude=fix.latitude if fix else None,
            longitude=fix.longitude if fix else None,
            brightness=brightness,
            sound_level=sound_level,
        )

    async def _locate(self) -> Optional[GeoFix]:
        """Take a location fix bounded by the geolocation timeout, or None."""
        if self._location is None:
            return None
        try:
            return await asyncio.wait_for(
                self._location.locate(),
                timeout=self._cfg.analysis.geolocation_timeout_s,
            )
        except asyncio.TimeoutError:
            _log.warn("sensors", "location_timeout", {
                "timeout_s": self._cfg.analysis.geolocation_timeout_s,
            })
        except Exception as exc:  # noqa: BLE001
            _log.warn("sensors", "location_unavailable", {"error": str(exc)})
        return None

    async def _evaluate(self, request: AnalysisRequest) -> Optional[AnalysisResult]:
        """
        Call the gateway and validate its output.

        Returns:
            A validated result, a fallback result (only when enabled and the
            remote call wholly failed), or None after reporting the failure.
        """
        parts = self._prompts.build_parts(request)
        try:
            raw_text = await self._gateway.call(parts)
        except Exception as exc:  # noqa: BLE001
            if self._cfg.analysis.use_fallback:
                result = pick_fallback(str(exc) or type(exc).__name__, self._rng)
                self.publish(ON_FALLBACK, {"reason": str(exc), "risk_level": result.risk_level})
                return result
            self._report_failure(exc)
            return None

        try:
            return self._validator.validate(raw_text)
        except MalformedResponseError as exc:
            self._report_failure(exc)
            return None

    def _report_failure(self, exc: Exception) -> None:
        """One SYSTEM entry and a spoken apology; state is left untouched."""
        if isinstance(exc, GuardianError):
            message = exc.user_message
        else:
            message = f"AI analysis failed: {exc}" if str(exc) else FAILURE_SPOKEN_MESSAGE
        _log.error("pipeline", "analysis_failed", {
            "error_type": type(exc).__name__,
            "error": str(exc),
            "state": self.state.value,
        })
        self._append(LogKind.SYSTEM, message)
        self._speak(FAILURE_SPOKEN_MESSAGE)

    def _on_result(self, result: AnalysisResult) -> None:
        """
        Apply a result and dispatch its side effects.

        Fallback results are logged behind a SYSTEM notice and voiced, but
        never move the state and never raise the emergency prompt.
        """
        if result.is_fallback:
            self._append(LogKind.SYSTEM, FALLBACK_NOTICE)
        else:
            self._fsm.apply_result(result)

        self._append(LogKind.ASSISTANT, result.spoken_response)
        for rec in result.recommendations:
            self._append(LogKind.SYSTEM, f"• {rec}")
        self._speak(result.spoken_response)

        if (
            not result.is_fallback
            and result.risk_level >= C.CRITICAL_RISK
            and not self._fsm.is_locked_down
        ):
            self._pending_prompt = CRITICAL_PROMPT_MESSAGE
            _log.warn("pipeline", "emergency_prompt_raised", {
                "risk_level": result.risk_level,
                "should_alert_emergency": result.should_alert_emergency,
            })
            self.publish(ON_CONFIRMATION_NEEDED, {
                "message": CRITICAL_PROMPT_MESSAGE,
                "risk_level": result.risk_level,
                "should_alert_emergency": result.should_alert_emergency,
            })

    # ── Emergency ─────────────────────────────────────────────────────────────

    async def trigger_emergency(self, source: str = "manual", location: Optional[GeoFix] = None) -> bool:
        """
        Enter LOCKDOWN and fire its side effects exactly once.

        A second trigger before :meth:`reset` is a no-op. Never uses a
        fallback and never calls the remote model.

        Args:
            source: What fired the trigger (for telemetry).
            location: Known coordinates; when omitted a fix is taken.

        Returns:
            True if LOCKDOWN was entered by this call.
        """
        # State flips synchronously, so a concurrent trigger sees LOCKDOWN
        if not self._fsm.enter_lockdown(reason=source):
            _log.info("pipeline", "emergency_ignored_in_lockdown", {"source": source})
            return False

        epoch = self._lockdown_epoch
        self._pending_prompt = None
        _log.critical("pipeline", "emergency_triggered", {"source": source, "epoch": epoch})
        self._append(LogKind.ASSISTANT, LOCKDOWN_ANNOUNCEMENT)
        self._speak(LOCKDOWN_ANNOUNCEMENT)

        fix = location if location is not None else await self._locate()
        # A reset during the fix ends this LOCKDOWN; a later one owns its own side effects
        if epoch != self._lockdown_epoch or not self._fsm.is_locked_down:
            _log.warn("pipeline", "emergency_reset_before_notify", {"source": source, "epoch": epoch})
            return True

        if self._notifier is not None:
            context = self._guarded("notifier", self._notifier.notify, fix)
            if context is not None:
                self._emergency = context
                self._append(LogKind.SYSTEM, context.message)
        if self._siren is not None:
            self._guarded("siren", self._siren.start)

        self.publish(ON_EMERGENCY, {
            "source": source,
            "latitude": fix.latitude if fix else None,
            "longitude": fix.longitude if fix else None,
        })
        return True

    async def confirm_emergency(self, accepted: bool) -> bool:
        """
        Resolve a pending CRITICAL-risk prompt.

        Without a pending prompt this is a no-op.

        Returns:
            True if LOCKDOWN was entered as a result.
        """
        if self._pending_prompt is None:
            _log.warn("pipeline", "confirm_without_prompt", {"accepted": accepted})
            return False

        self._pending_prompt = None
        _log.info("pipeline", "emergency_prompt_answered", {"accepted": accepted})
        if not accepted:
            return False
        return await self.trigger_emergency(source="confirmed_alert")

    def reset(self, reason: str = "user_reset") -> bool:
        """
        Return to SAFE from any state, clearing emergency context and prompt.

        Returns:
            True if the state changed.
        """
        changed = self._fsm.reset(reason=reason)
        self._lockdown_epoch += 1
        self._emergency = None
        self._pending_prompt = None
        if self._siren is not None:
            self._guarded("siren", self._siren.stop)
        _log.info("pipeline", "reset", {"changed": changed, "reason": reason})
        return changed

    def shutdown(self) -> None:
        """Stop the siren, release devices, and flush the log."""
        if self._siren is not None:
            self._guarded("siren", self._siren.stop)
        for resource in (self._frame_source, self._speech):
            closer = getattr(resource, "release", None) or getattr(resource, "shutdown", None)
            if callable(closer):
                self._guarded("shutdown", closer)
        _log.info("pipeline", "controller_shutdown", {})
        _log.flush()

    # ── Side-effect helpers ───────────────────────────────────────────────────

    def _guarded(self, sink: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Call a sink; log and return None if it raises."""
        try:
            return fn(*args)
        except Exception as exc:  # noqa: BLE001
            _log.error("pipeline", "sink_error", {"sink": sink, "error": str(exc)})
            return None

    def _append(self, kind: LogKind, message: str) -> None:
        entry = self._transcript.append(kind, message)
        self.publish(ON_LOG, entry.to_dict())

    def _speak(self, text: str) -> None:
        self.publish(ON_SPEAKING, {"text": text})
        self._guarded("speech", self._speech.speak, text)

    def _on_fsm_transition(self, from_state: SystemState, to_state: SystemState, reason: str) -> None:
        self.publish(ON_STATE_CHANGE, {
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
        })
