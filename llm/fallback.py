"""
llm/fallback.py — Last-resort canned guardian replies.

Substituted only when the remote call wholly fails, so the user still hears
a guardian reply. Every substituted result has ``is_fallback=True``, is
logged as ``fallback_substituted``, and is never allowed to drive a state
change.
"""

from __future__ import annotations

import random
from typing import Optional

from core.logger import get_logger
from safety.validator import AnalysisResult

_log = get_logger()

FALLBACK_RESULTS: tuple[AnalysisResult, ...] = (
    AnalysisResult(
        risk_level=2,
        confidence=0.85,
        spoken_response=(
            "Lighting conditions are stable and the area appears populated. "
            "I recommend maintaining your current route while I continue to monitor."
        ),
        recommendations=("Stay in well-lit areas", "Keep your phone accessible"),
        should_alert_emergency=False,
        is_fallback=True,
    ),
    AnalysisResult(
        risk_level=5,
        confidence=0.78,
        spoken_response=(
            "I've detected low lighting in your immediate vicinity. "
            "I recommend moving toward the nearest main road to improve visibility."
        ),
        recommendations=("Increase walking pace", "Move toward streetlights"),
        should_alert_emergency=False,
        is_fallback=True,
    ),
)


def pick_fallback(reason: str, rng: Optional[random.Random] = None) -> AnalysisResult:
    """
    Choose a canned reply and record the substitution.

    Args:
        reason: Why the remote call failed (kept in telemetry).
        rng: Optional random source (seeded in tests).

    Returns:
        One of :data:`FALLBACK_RESULTS`.
    """
    chooser = rng or random
    result = chooser.choice(FALLBACK_RESULTS)
    _log.warn("gateway", "fallback_substituted", {
        "reason": reason,
        "risk_level": result.risk_level,
    })
    return result
