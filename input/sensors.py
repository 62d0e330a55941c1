"""
input/sensors.py — Best-effort sensor collectors for a safety analysis.

Provides a single-frame webcam capture (OpenCV) and location providers.
Every collector signals a missing reading with
:class:`~core.errors.SensorUnavailableError`; the orchestrator absorbs it and
continues with the field left empty.

Frame shaping
-------------
* Resized to 640×480 before encoding.
* Encoded as JPEG at quality 60, base64 without a data-URL prefix.
* If the encoding exceeds ``max_image_bytes`` it is re-encoded at half the
  quality (not below :data:`_MIN_JPEG_QUALITY`); still too large → dropped.
* Brightness is the mean over all pixels and channels, in ``[0, 255]``.
"""

from __future__ import annotations

import asyncio
import base64
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

from core.config import SensorConfig
from core.errors import SensorUnavailableError
from core.logger import get_logger

_log = get_logger()

_MIN_JPEG_QUALITY: int = 20


# ── Public data containers ────────────────────────────────────────────────────

@dataclass(frozen=True)
class CapturedFrame:
    """
    A single encoded camera frame.

    Attributes:
        image_base64: JPEG bytes, base64 encoded, no ``data:`` prefix.
        brightness: Mean pixel intensity in ``[0, 255]``.
    """

    image_base64: str
    brightness: float


@dataclass(frozen=True)
class GeoFix:
    latitude: float
    longitude: float


class FrameSource(Protocol):
    async def capture(self) -> CapturedFrame: ...


class LocationProvider(Protocol):
    async def locate(self) -> GeoFix: ...


# ── Frame encoding ────────────────────────────────────────────────────────────

def frame_brightness(frame: np.ndarray) -> float:
    """Mean intensity of a BGR (or grayscale) frame."""
    return float(np.mean(frame)) if frame.size else 0.0


def encode_frame(
    frame: np.ndarray,
    width: int,
    height: int,
    quality: int,
    max_bytes: int,
) -> CapturedFrame:
    """
    Resize, JPEG-encode and base64 a raw frame within a byte budget.

    Args:
        frame: BGR image as returned by ``cv2.VideoCapture.read``.
        width: Target width in pixels.
        height: Target height in pixels.
        quality: Initial JPEG quality in ``[1, 100]``.
        max_bytes: Upper bound on the encoded JPEG size.

    Returns:
        A :class:`CapturedFrame`.

    Raises:
        SensorUnavailableError: If the frame is empty, cannot be encoded, or
            stays over budget at the minimum quality.
    """
    if frame is None or frame.size == 0:
        raise SensorUnavailableError("Empty camera frame")

    resized = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
    brightness = frame_brightness(resized)

    q = quality
    while True:
        ok, buf = cv2.imencode(".jpg", resized, [int(cv2.IMWRITE_JPEG_QUALITY), q])
        if not ok:
            raise SensorUnavailableError("Image capture failed")
        if len(buf) <= max_bytes:
            break
        if q <= _MIN_JPEG_QUALITY:
            raise SensorUnavailableError(
                f"Encoded frame is {len(buf)} bytes, over the {max_bytes} byte limit"
            )
        q = max(_MIN_JPEG_QUALITY, q // 2)

    return CapturedFrame(
        image_base64=base64.b64encode(buf.tobytes()).decode("ascii"),
        brightness=round(brightness, 2),
    )


# ── Webcam capture ────────────────────────────────────────────────────────────

class WebcamCapture:
    """
    Single-frame webcam collector.

    The device is opened lazily on the first capture and kept open so later
    captures do not pay the warm-up cost. Blocking OpenCV calls run in a
    worker thread so the event loop stays responsive.

    Args:
        config: Sensor configuration (camera index, frame size, JPEG budget).
    """

    def __init__(self, config: SensorConfig) -> None:
        self._cfg = config
        self._cap: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

    async def capture(self) -> CapturedFrame:
        """
        Grab and encode one frame.

        Raises:
            SensorUnavailableError: If the camera is absent, denied or not ready.
        """
        return await asyncio.to_thread(self._capture_sync)

    def release(self) -> None:
        """Close the camera device. Safe to call multiple times."""
        with self._lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
                _log.info("sensors", "camera_released", {})

    def _capture_sync(self) -> CapturedFrame:
        with self._lock:
            if self._cap is None:
                cap = cv2.VideoCapture(self._cfg.camera_index)
                if not cap.isOpened():
                    cap.release()
                    raise SensorUnavailableError(
                        f"Camera {self._cfg.camera_index} could not be opened"
                    )
                self._cap = cap
                _log.info("sensors", "camera_opened", {"index": self._cfg.camera_index})

            ok, frame = self._cap.read()

        if not ok or frame is None:
            raise SensorUnavailableError("Video not ready")

        return encode_frame(
            frame,
            width=self._cfg.frame_width,
            height=self._cfg.frame_height,
            quality=self._cfg.jpeg_quality,
            max_bytes=self._cfg.max_image_bytes,
        )


# ── Location ──────────────────────────────────────────────────────────────────

class FixedLocationProvider:
    """
    Location provider backed by configured coordinates.

    Without coordinates every fix fails with :class:`SensorUnavailableError`,
    which the orchestrator treats as "location unknown".
    """

    def __init__(self, latitude: Optional[float] = None, longitude: Optional[float] = None) -> None:
        self._latitude = latitude
        self._longitude = longitude

    @classmethod
    def from_config(cls, config: SensorConfig) -> "FixedLocationProvider":
        return cls(config.latitude, config.longitude)

    async def locate(self) -> GeoFix:
        if self._latitude is None or self._longitude is None:
            raise SensorUnavailableError("No location source configured")
        return GeoFix(latitude=self._latitude, longitude=self._longitude)
