"""
safety/validator.py — Strict schema gate for remote analysis output.

Locates the JSON object embedded in the model's raw text and checks the five
required fields and their ranges. A single violation rejects the whole
result; values are never coerced or clamped.

Rejection ladder (first failure wins)::

    no {...} span / unparseable JSON      → MalformedResponseError
    any required field missing            → MalformedResponseError
    risk_level not a number in [0, 10]    → MalformedResponseError
    confidence not a number in [0, 1]     → MalformedResponseError
    recommendations not a list            → MalformedResponseError
    spoken_response not a non-empty str   → MalformedResponseError
    should_alert_emergency not a bool     → MalformedResponseError
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any

from core.constants import C
from core.errors import MalformedResponseError
from core.logger import get_logger

log = get_logger()

REQUIRED_FIELDS: tuple[str, ...] = (
    "risk_level",
    "confidence",
    "spoken_response",
    "recommendations",
    "should_alert_emergency",
)

# Greedy: first "{" to last "}" so nested objects stay intact.
_JSON_SPAN = re.compile(r"\{[\s\S]*\}")


# ── AnalysisResult ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AnalysisResult:
    """
    A validated risk judgment.

    Attributes:
        risk_level:             Severity score in ``[0, 10]``.
        confidence:             Model confidence in ``[0, 1]``.
        spoken_response:        Short guardian reply, voiced to the user.
        recommendations:        Ordered advice strings (possibly empty).
        should_alert_emergency: Model's own escalation hint.
        is_fallback:            True for a canned reply substituted after a
                                wholly failed remote call. Never serialised.
    """

    risk_level: float
    confidence: float
    spoken_response: str
    recommendations: tuple[Any, ...]
    should_alert_emergency: bool
    is_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the wire shape (the five schema fields only)."""
        return {
            "risk_level": self.risk_level,
            "confidence": self.confidence,
            "spoken_response": self.spoken_response,
            "recommendations": list(self.recommendations),
            "should_alert_emergency": self.should_alert_emergency,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    """True for finite ints/floats; bools are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """
    Pull the outermost ``{...}`` object out of free-form model text.

    Args:
        raw_text: Raw model output, possibly wrapped in prose or code fences.

    Returns:
        The decoded JSON object.

    Raises:
        MalformedResponseError: If no object is found or it does not parse.
    """
    if not isinstance(raw_text, str):
        raise MalformedResponseError(f"Expected text, got {type(raw_text).__name__}")

    match = _JSON_SPAN.search(raw_text)
    if match is None:
        raise MalformedResponseError("No JSON object found in model output")

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"JSON parse failed: {exc}") from exc

    if not isinstance(parsed, dict):
        raise MalformedResponseError("Model output JSON is not an object")
    return parsed


# ── Validator ─────────────────────────────────────────────────────────────────

class ResponseValidator:
    """
    Validates raw gateway text into an :class:`AnalysisResult`.

    Stateless; one instance may be shared by the orchestrator and the HTTP
    boundary.
    """

    def validate(self, raw_text: str) -> AnalysisResult:
        """
        Parse and validate model output.

        Args:
            raw_text: Raw text returned by the reasoning gateway.

        Returns:
            The parsed result, field values unchanged.

        Raises:
            MalformedResponseError: On any schema or range violation.
        """
        try:
            parsed = extract_json_object(raw_text)
            return self.validate_mapping(parsed)
        except MalformedResponseError as exc:
            log.error("validator", "rejected", {
                "reason": str(exc),
                "raw_preview": str(raw_text)[:200],
            })
            raise

    def validate_mapping(self, parsed: dict[str, Any]) -> AnalysisResult:
        """Validate an already-decoded object. See :meth:`validate`."""
        missing = [name for name in REQUIRED_FIELDS if name not in parsed]
        if missing:
            raise MalformedResponseError(
                f"Missing fields: {', '.join(missing)}",
                user_message=(
                    "AI analysis response was incomplete. "
                    f"Missing: {', '.join(missing)}"
                ),
            )

        risk_level = parsed["risk_level"]
        if not _is_number(risk_level) or not (C.RISK_MIN <= risk_level <= C.RISK_MAX):
            raise MalformedResponseError(
                f"Invalid risk_level: {risk_level!r}",
                user_message="AI generated an invalid risk assessment. Please try again.",
            )

        confidence = parsed["confidence"]
        if not _is_number(confidence) or not (0.0 <= confidence <= 1.0):
            raise MalformedResponseError(
                f"Invalid confidence: {confidence!r}",
                user_message="AI confidence score out of range. Please try again.",
            )

        recommendations = parsed["recommendations"]
        if not isinstance(recommendations, list):
            raise MalformedResponseError(
                "recommendations is not an array",
                user_message="AI recommendations format is invalid. Please try again.",
            )

        spoken_response = parsed["spoken_response"]
        if not isinstance(spoken_response, str) or not spoken_response.strip():
            raise MalformedResponseError(f"Invalid spoken_response: {spoken_response!r}")

        should_alert = parsed["should_alert_emergency"]
        if not isinstance(should_alert, bool):
            raise MalformedResponseError(f"Invalid should_alert_emergency: {should_alert!r}")

        return AnalysisResult(
            risk_level=risk_level,
            confidence=confidence,
            spoken_response=spoken_response,
            recommendations=tuple(recommendations),
            should_alert_emergency=should_alert,
        )
