"""
output/emergency.py — Emergency contact notification and siren.

Both actuators fire only on LOCKDOWN entry and never touch the remote model.

* :class:`EmergencyNotifier` simulates an SMS to the configured contact with
  the live location and returns the resulting :class:`EmergencyContext`.
* :class:`Siren` plays a hi-lo two-tone siren (960/770 Hz, half a second
  each) through ``pygame.mixer`` for a few seconds, stoppable at any time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import numpy as np

from core.config import EmergencyConfig
from core.logger import get_logger
from input.sensors import GeoFix

_log = get_logger()

_SAMPLE_RATE: int = 22050
_SIREN_GAIN: float = 0.4
_SIREN_FADE_S: float = 0.1
_SIREN_HALF_PERIOD_S: float = 0.5


# ──────────────────────────────────────────────────────────────
# Data
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EmergencyContact:
    name: str
    phone: str

    @classmethod
    def from_config(cls, config: EmergencyConfig) -> "EmergencyContact":
        return cls(name=config.contact_name, phone=config.contact_phone)


@dataclass(frozen=True)
class EmergencyContext:
    """
    Record of one location share, created on LOCKDOWN entry.

    Attributes:
        contact: Who was notified.
        latitude: Shared latitude, or None when no fix was available.
        longitude: Shared longitude, or None when no fix was available.
        message: The simulated SMS text as logged.
        shared_at: UTC time of the share.
    """

    contact: EmergencyContact
    latitude: Optional[float]
    longitude: Optional[float]
    message: str
    shared_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact": {"name": self.contact.name, "phone": self.contact.phone},
            "latitude": self.latitude,
            "longitude": self.longitude,
            "message": self.message,
            "shared_at": self.shared_at.isoformat(),
        }


class Notifier(Protocol):
    def notify(self, fix: Optional[GeoFix]) -> EmergencyContext: ...


class SirenSink(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


# ──────────────────────────────────────────────────────────────
# EmergencyNotifier
# ──────────────────────────────────────────────────────────────

def format_sms(contact: EmergencyContact, fix: Optional[GeoFix], when: datetime) -> str:
    """
    Build the simulated SMS line.

    Coordinates are printed to five decimals; without a fix the message says
    the location is unavailable.
    """
    stamp = when.astimezone().strftime("%H:%M:%S")
    if fix is None:
        return (
            f"SMS SIMULATION: Emergency alert sent to {contact.name}. "
            f"Location unavailable • {stamp}"
        )
    return (
        f"SMS SIMULATION: Live location shared with {contact.name}. "
        f"Lat: {fix.latitude:.5f}, Lng: {fix.longitude:.5f} • {stamp}"
    )


class EmergencyNotifier:
    """
    Simulated SMS notifier.

    Args:
        contact: The emergency contact to notify.
    """

    def __init__(self, contact: EmergencyContact) -> None:
        self._contact = contact

    @property
    def contact(self) -> EmergencyContact:
        return self._contact

    def notify(self, fix: Optional[GeoFix]) -> EmergencyContext:
        """
        "Send" the alert and return its context.

        Args:
            fix: Current location, or None when no fix could be taken.
        """
        now = datetime.now(tz=timezone.utc)
        message = format_sms(self._contact, fix, now)
        context = EmergencyContext(
            contact=self._contact,
            latitude=fix.latitude if fix else None,
            longitude=fix.longitude if fix else None,
            message=message,
            shared_at=now,
        )
        _log.critical("emergency", "sms_simulated", {
            "contact": self._contact.name,
            "phone": self._contact.phone,
            "has_location": context.has_location,
        })
        return context


# ──────────────────────────────────────────────────────────────
# Siren
# ──────────────────────────────────────────────────────────────

def siren_waveform(
    duration_s: float,
    hi_hz: float,
    lo_hz: float,
    sample_rate: int = _SAMPLE_RATE,
) -> np.ndarray:
    """
    Render the hi-lo siren as mono 16-bit PCM.

    The tone alternates hi/lo every half second with a continuous phase, and
    is faded in and out over 100 ms to avoid clicks.

    Returns:
        ``int16`` array of ``round(duration_s * sample_rate)`` samples.
    """
    n = int(round(duration_s * sample_rate))
    t = np.arange(n, dtype=np.float64) / sample_rate
    hi = (np.floor(t / _SIREN_HALF_PERIOD_S) % 2) == 0
    freq = np.where(hi, hi_hz, lo_hz)
    phase = 2.0 * np.pi * np.cumsum(freq) / sample_rate
    wave = np.sin(phase)

    fade = min(int(_SIREN_FADE_S * sample_rate), n // 2)
    if fade > 0:
        ramp = np.linspace(0.0, 1.0, fade)
        wave[:fade] *= ramp
        wave[-fade:] *= ramp[::-1]

    return (wave * _SIREN_GAIN * 32767.0).astype(np.int16)


class Siren:
    """
    Two-tone emergency siren played through ``pygame.mixer``.

    The mixer is initialised lazily on the first :meth:`start`. If no audio
    device is available the failure is logged and the siren stays silent.

    Args:
        config: Emergency configuration (duration and tone frequencies).
    """

    def __init__(self, config: EmergencyConfig) -> None:
        self._cfg = config
        self._lock = threading.Lock()
        self._sound: Optional[Any] = None
        self._channel: Optional[Any] = None
        self._mixer_ready = False

    @property
    def active(self) -> bool:
        with self._lock:
            return self._channel is not None and bool(self._channel.get_busy())

    def start(self) -> None:
        """Start the siren; restarts it if already playing."""
        with self._lock:
            if not self._ensure_mixer():
                return
            if self._sound is None:
                self._sound = self._build_sound()
            if self._channel is not None:
                self._channel.stop()
            self._channel = self._sound.play()
        _log.warn("emergency", "siren_started", {
            "duration_s": self._cfg.siren_duration_s,
            "hi_hz": self._cfg.siren_hi_hz,
            "lo_hz": self._cfg.siren_lo_hz,
        })

    def stop(self) -> None:
        """Stop the siren if it is playing."""
        with self._lock:
            if self._channel is None:
                return
            self._channel.stop()
            self._channel = None
        _log.info("emergency", "siren_stopped", {})

    def _ensure_mixer(self) -> bool:
        if self._mixer_ready:
            return True
        try:
            import pygame  # type: ignore
            if pygame.mixer.get_init() is None:
                pygame.mixer.init(frequency=_SAMPLE_RATE, size=-16, channels=1, buffer=512)
            self._mixer_ready = True
        except Exception as exc:  # noqa: BLE001
            _log.warn("emergency", "mixer_init_failed", {"error": str(exc)})
        return self._mixer_ready

    def _build_sound(self) -> Any:
        import pygame  # type: ignore

        rate, _size, channels = pygame.mixer.get_init()
        pcm = siren_waveform(
            self._cfg.siren_duration_s,
            self._cfg.siren_hi_hz,
            self._cfg.siren_lo_hz,
            sample_rate=rate,
        )
        if channels > 1:
            pcm = np.ascontiguousarray(np.repeat(pcm[:, np.newaxis], channels, axis=1))
        return pygame.sndarray.make_sound(pcm)
