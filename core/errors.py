"""
core/errors.py — Failure taxonomy for the safety analysis pipeline.

Every error carries a ``user_message`` suitable for the transcript; the
orchestrator never shows raw exception text to the user.
"""

from __future__ import annotations


class GuardianError(RuntimeError):
    """Base class for all Sentinel Guardian failures."""

    user_message: str = "AI analysis temporarily unavailable. Please try again."

    def __init__(self, message: str = "", user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class GatewayTimeoutError(GuardianError):
    """The remote reasoning call exceeded its hard timeout."""

    user_message = "Gemini API request timed out after 15 seconds."


class RateLimitedError(GuardianError):
    """The remote service rejected the call for quota/rate reasons (429). Never retried."""

    user_message = "API Rate Limit reached. Please wait a moment."


class ServiceUnavailableError(GuardianError):
    """Transient 503-class failure; retried with the longer backoff."""

    user_message = "AI service is temporarily unavailable. Please try again shortly."


class MalformedResponseError(GuardianError):
    """
    The model output violated the analysis schema.

    Args:
        message: Diagnostic detail (kept in telemetry).
        user_message: Optional override of the transcript text.
    """

    user_message = "AI response formatting error. Please retry."


class SensorUnavailableError(GuardianError):
    """A camera, location or microphone reading could not be taken. Always absorbed."""

    user_message = "Sensor unavailable."
