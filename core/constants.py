"""
core/constants.py — All system constants for Sentinel Guardian.

Single frozen dataclass with typed constant groups: system states (Enum),
gateway timing budgets, risk thresholds, emergency defaults, and the canned
phrases spoken or logged by the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


# ──────────────────────────────────────────────────────────────
# System states
# ──────────────────────────────────────────────────────────────

class SystemState(Enum):
    """All valid states for the Sentinel Guardian safety state machine."""

    IDLE = "IDLE"
    SAFE = "SAFE"
    ELEVATED = "ELEVATED"
    CRITICAL = "CRITICAL"
    LOCKDOWN = "LOCKDOWN"


class LogKind(Enum):
    """Author of a transcript entry."""

    USER = "USER"
    ASSISTANT = "ASSISTANT"
    SYSTEM = "SYSTEM"


# ──────────────────────────────────────────────────────────────
# Frozen constants dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GuardianConstants:
    """
    Frozen dataclass holding all Sentinel Guardian system constants.

    Use the class attributes directly — do not instantiate this class.

    Example::

        from core.constants import C, SystemState

        print(C.GATEWAY_TIMEOUT_S)   # 15.0
        print(SystemState.LOCKDOWN)  # SystemState.LOCKDOWN
    """

    # ── Gateway timing (seconds) ──────────────────────────────
    GATEWAY_TIMEOUT_S: ClassVar[float] = 15.0
    """Hard cutoff for a single remote reasoning call."""

    GATEWAY_MAX_RETRIES: ClassVar[int] = 2
    """Additional attempts after the first failure."""

    RETRY_DELAY_S: ClassVar[float] = 1.5
    """Backoff before retrying a generic failure."""

    SERVICE_UNAVAILABLE_DELAY_S: ClassVar[float] = 3.0
    """Backoff before retrying a 503-class failure."""

    GEOLOCATION_TIMEOUT_S: ClassVar[float] = 5.0
    """Bound on the best-effort location fix taken per analysis."""

    # ── Risk thresholds ───────────────────────────────────────
    RISK_MIN: ClassVar[int] = 0
    RISK_MAX: ClassVar[int] = 10

    CRITICAL_RISK: ClassVar[int] = 7
    """risk_level at or above this maps to CRITICAL."""

    ELEVATED_RISK: ClassVar[int] = 4
    """risk_level at or above this (and below CRITICAL_RISK) maps to ELEVATED."""

    # ── Request shaping ───────────────────────────────────────
    MODEL_ID: ClassVar[str] = "gemini-2.5-flash"
    NO_IMAGE: ClassVar[str] = "no-image"
    """Wire placeholder for an absent camera frame."""

    IMAGE_MIME_TYPE: ClassVar[str] = "image/jpeg"
    FRAME_WIDTH: ClassVar[int] = 640
    FRAME_HEIGHT: ClassVar[int] = 480
    JPEG_QUALITY: ClassVar[int] = 60
    MAX_IMAGE_BYTES: ClassVar[int] = 1_048_576

    MIN_QUERY_CHARS: ClassVar[int] = 4
    """Queries shorter than this need a safety keyword to be analysed."""

    # ── Emergency ─────────────────────────────────────────────
    EMERGENCY_CONTACT_NAME: ClassVar[str] = "Mom"
    EMERGENCY_CONTACT_PHONE: ClassVar[str] = "+91-1234567890"
    SIREN_DURATION_S: ClassVar[float] = 4.0
    SIREN_HI_HZ: ClassVar[float] = 960.0
    SIREN_LO_HZ: ClassVar[float] = 770.0


#: Convenience alias: ``from core.constants import C``
C = GuardianConstants


# ── Phrases ───────────────────────────────────────────────────

LOCKDOWN_ANNOUNCEMENT: str = (
    "Emergency Lockdown activated. Sharing live location and alerting emergency contacts."
)

ANALYZING_MESSAGE: str = "Analyzing environment..."

QUERY_TOO_SHORT_MESSAGE: str = "Query too short for analysis."

FAILURE_SPOKEN_MESSAGE: str = (
    "I'm sorry, AI analysis is temporarily unavailable. Please try again."
)

CRITICAL_PROMPT_MESSAGE: str = (
    "High risk detected. Would you like me to notify your emergency contact "
    "with your live location?"
)

DEFAULT_TRANSCRIPT: str = "Checking surroundings..."

FALLBACK_NOTICE: str = "AI analysis unavailable. The next reply is a canned offline response."
"""Logged ahead of a fallback reply so it is never mistaken for a model answer."""

SAFETY_KEYWORDS: tuple[str, ...] = (
    "safe", "danger", "help", "emergency", "scared", "risk",
    "surroundings", "check", "look", "watching", "anyone",
)
"""A query containing any of these is always analysed, regardless of length."""

EMERGENCY_PHRASES: tuple[str, ...] = ("help", "emergency", "not safe", "call someone")
"""A voice transcript containing any of these fires the manual emergency trigger."""
