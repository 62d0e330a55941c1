"""
tests/conftest.py — Shared fixtures and hand-written fakes.

No network, camera or audio device is touched: the gateway runs over a
scripted transport, backoff uses a fake clock, and every actuator is a
recording double.
"""

from __future__ import annotations

import os
import tempfile

# Must run before any project module creates the logger singleton.
os.environ.setdefault("GUARDIAN_LOG_DIR", tempfile.mkdtemp(prefix="guardian-test-logs-"))

import asyncio
import json
import random
from typing import Any, Optional, Sequence, Union

import pytest

from core.config import AnalysisConfig, GatewayConfig, GuardianConfig
from input.sensors import CapturedFrame, GeoFix
from llm.gateway import ReasoningGateway, RetryPolicy
from output.emergency import EmergencyContact, EmergencyNotifier
from output.tts_engine import LogSpeech
from pipeline.controller import GuardianController


def result_json(
    risk_level: Any = 2,
    confidence: Any = 0.9,
    spoken_response: Any = "All clear. I recommend staying on the main road.",
    recommendations: Any = ("Stay in well-lit areas",),
    should_alert_emergency: Any = False,
    **extra: Any,
) -> str:
    """Model-style JSON answer with overridable fields."""
    body = {
        "risk_level": risk_level,
        "confidence": confidence,
        "spoken_response": spoken_response,
        "recommendations": list(recommendations) if isinstance(recommendations, tuple) else recommendations,
        "should_alert_emergency": should_alert_emergency,
    }
    body.update(extra)
    return json.dumps(body)


# ──────────────────────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────────────────────

class FakeClock:
    """Virtual time advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class ScriptedTransport:
    """
    Transport replaying a script of answers.

    Each step is either raw text to return or an exception to raise. The
    last step repeats once the script is exhausted.
    """

    def __init__(
        self,
        script: Sequence[Union[str, BaseException]],
        clock: Optional[FakeClock] = None,
        delay_s: float = 0.0,
    ) -> None:
        self._script = list(script)
        self._clock = clock
        self._delay_s = delay_s
        self.calls: list[list[dict[str, Any]]] = []
        self.call_times: list[float] = []

    async def __call__(self, parts: list[dict[str, Any]]) -> str:
        self.calls.append(parts)
        self.call_times.append(self._clock.now if self._clock else 0.0)
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        step = self._script[min(len(self.calls) - 1, len(self._script) - 1)]
        if isinstance(step, BaseException):
            raise step
        return step

    @property
    def prompt(self) -> str:
        return self.calls[-1][0]["text"]


class RecordingNotifier(EmergencyNotifier):
    def __init__(self) -> None:
        super().__init__(EmergencyContact(name="Mom", phone="+91-1234567890"))
        self.fixes: list[Optional[GeoFix]] = []

    def notify(self, fix):
        self.fixes.append(fix)
        return super().notify(fix)


class RecordingSiren:
    def __init__(self) -> None:
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1

    def stop(self) -> None:
        self.stops += 1


class StaticFrames:
    def __init__(self, image_base64: str = "anBlZw==", brightness: float = 42.0) -> None:
        self.frame = CapturedFrame(image_base64=image_base64, brightness=brightness)
        self.captures = 0

    async def capture(self) -> CapturedFrame:
        self.captures += 1
        return self.frame


class StaticLocation:
    def __init__(self, latitude: float = 12.9716, longitude: float = 77.5946, delay_s: float = 0.0) -> None:
        self.fix = GeoFix(latitude=latitude, longitude=longitude)
        self.delay_s = delay_s

    async def locate(self) -> GeoFix:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self.fix


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def speech() -> LogSpeech:
    return LogSpeech()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def siren() -> RecordingSiren:
    return RecordingSiren()


@pytest.fixture()
def make_controller(clock, speech, notifier, siren):
    """
    Factory building a controller around a scripted transport.

    Returns ``(controller, transport)``.
    """

    def _make(
        script: Sequence[Union[str, BaseException]] = (result_json(),),
        *,
        use_fallback: bool = False,
        fallback_enabled: bool = True,
        geolocation_timeout_s: float = 5.0,
        max_retries: int = 2,
        transport_delay_s: float = 0.0,
        **kwargs: Any,
    ) -> tuple[GuardianController, ScriptedTransport]:
        transport = ScriptedTransport(script, clock=clock, delay_s=transport_delay_s)
        gateway = ReasoningGateway(
            transport,
            policy=RetryPolicy(max_retries=max_retries),
            sleep=clock.sleep,
        )
        config = GuardianConfig(
            gateway=GatewayConfig(fallback_enabled=fallback_enabled),
            analysis=AnalysisConfig(
                use_fallback=use_fallback,
                geolocation_timeout_s=geolocation_timeout_s,
            ),
        )
        kwargs.setdefault("speech", speech)
        kwargs.setdefault("notifier", notifier)
        kwargs.setdefault("siren", siren)
        controller = GuardianController(
            gateway,
            config=config,
            rng=random.Random(7),
            **kwargs,
        )
        return controller, transport

    return _make
