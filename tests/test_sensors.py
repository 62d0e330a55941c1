"""
tests/test_sensors.py — Frame encoding, location and ambient audio level.

Frames are synthetic numpy arrays; no camera is opened.
"""

from __future__ import annotations

import asyncio
import base64

import cv2
import numpy as np
import pytest

from core.config import SensorConfig
from core.errors import SensorUnavailableError
from input.audio_level import AmbientAudioMonitor, level_from_samples
from input.sensors import FixedLocationProvider, GeoFix, encode_frame, frame_brightness


def _frame(value: int, h: int = 120, w: int = 160) -> np.ndarray:
    return np.full((h, w, 3), value, dtype=np.uint8)


# ──────────────────────────────────────────────────────────────
# encode_frame
# ──────────────────────────────────────────────────────────────

class TestEncodeFrame:

    def test_dark_frame(self) -> None:
        captured = encode_frame(_frame(0), 64, 48, quality=60, max_bytes=1_048_576)
        assert captured.brightness == 0.0
        assert base64.b64decode(captured.image_base64).startswith(b"\xff\xd8")

    def test_bright_frame(self) -> None:
        captured = encode_frame(_frame(255), 64, 48, quality=60, max_bytes=1_048_576)
        assert captured.brightness == 255.0

    def test_output_is_resized(self) -> None:
        captured = encode_frame(_frame(128, 480, 640), 32, 24, quality=90, max_bytes=1_048_576)
        raw = np.frombuffer(base64.b64decode(captured.image_base64), dtype=np.uint8)
        decoded = cv2.imdecode(raw, cv2.IMREAD_COLOR)
        assert decoded.shape == (24, 32, 3)

    def test_over_budget_is_dropped(self) -> None:
        with pytest.raises(SensorUnavailableError):
            encode_frame(_frame(90), 64, 48, quality=60, max_bytes=10)

    def test_empty_frame(self) -> None:
        with pytest.raises(SensorUnavailableError):
            encode_frame(np.zeros((0, 0, 3), dtype=np.uint8), 64, 48, quality=60, max_bytes=1000)

    def test_brightness_of_empty_array(self) -> None:
        assert frame_brightness(np.zeros((0,), dtype=np.uint8)) == 0.0


# ──────────────────────────────────────────────────────────────
# Location
# ──────────────────────────────────────────────────────────────

class TestFixedLocation:

    def test_configured_fix(self) -> None:
        provider = FixedLocationProvider.from_config(
            SensorConfig(latitude=12.9716, longitude=77.5946)
        )
        assert asyncio.run(provider.locate()) == GeoFix(12.9716, 77.5946)

    def test_unconfigured_is_unavailable(self) -> None:
        with pytest.raises(SensorUnavailableError):
            asyncio.run(FixedLocationProvider().locate())


# ──────────────────────────────────────────────────────────────
# Ambient audio level
# ──────────────────────────────────────────────────────────────

class TestAudioLevel:

    def test_silence(self) -> None:
        assert level_from_samples(np.zeros(1024, dtype=np.int16)) == -30

    def test_empty_chunk_reads_as_silence(self) -> None:
        assert level_from_samples(np.array([], dtype=np.float32)) == -30

    def test_full_scale_float(self) -> None:
        assert level_from_samples(np.ones(256, dtype=np.float32)) == 90

    def test_full_scale_int16(self) -> None:
        assert level_from_samples(np.full(256, 32767, dtype=np.int16)) == 90

    def test_uint8_is_centred(self) -> None:
        assert level_from_samples(np.full(256, 128, dtype=np.uint8)) == -30

    def test_half_scale_is_six_db_down(self) -> None:
        assert level_from_samples(np.full(256, 0.5)) == 84

    def test_monitor(self) -> None:
        monitor = AmbientAudioMonitor()
        assert monitor.level is None
        assert monitor.feed(np.ones(64)) == 90
        assert monitor.level == 90
        monitor.clear()
        assert monitor.level is None
