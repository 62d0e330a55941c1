"""
llm/prompt_builder.py — Request shaping for the remote safety analysis.

Turns an :class:`AnalysisRequest` (query text plus best-effort sensor data)
into the guardian prompt, the request parts sent to the model, and the JSON
payload used on the ``/analyze-safety`` boundary.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, field_validator

from core.constants import C

logger = logging.getLogger(__name__)


# ── AnalysisRequest ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AnalysisRequest:
    """
    One query fused with whatever sensor data could be collected.

    Attributes:
        query_text: The user's question. Always present and non-empty.
        image_base64: JPEG frame, base64 without a data-URL prefix, or None.
        latitude: Location fix, or None.
        longitude: Location fix, or None.
        captured_at: When the request was assembled (UTC).
        brightness: Mean frame brightness in ``[0, 255]``, if a frame was taken.
        sound_level: Ambient level in dB, if a meter is attached.
    """

    query_text: str
    image_base64: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    brightness: Optional[float] = None
    sound_level: Optional[float] = None

    def __post_init__(self) -> None:
        if not isinstance(self.query_text, str) or not self.query_text.strip():
            raise ValueError("query_text must be a non-empty string")

    @property
    def has_image(self) -> bool:
        return bool(self.image_base64)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_payload(self) -> dict[str, Any]:
        """Return the ``/analyze-safety`` wire body for this request."""
        return {
            "user_text": self.query_text,
            "image_frame_base64": self.image_base64 or C.NO_IMAGE,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.captured_at.isoformat(),
        }


class SafetyPayload(BaseModel):
    """
    Pydantic-validated ``/analyze-safety`` request body.

    ``user_text`` is required and must not be blank; everything else is
    best-effort and may be null.
    """

    user_text: str
    image_frame_base64: Optional[str] = C.NO_IMAGE
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: Optional[datetime] = None

    @field_validator("user_text")
    @classmethod
    def must_be_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("user_text must not be empty")
        return v

    def to_request(self) -> AnalysisRequest:
        image = self.image_frame_base64
        if not image or image == C.NO_IMAGE:
            image = None
        captured_at = self.timestamp or datetime.now(tz=timezone.utc)
        return AnalysisRequest(
            query_text=self.user_text,
            image_base64=image,
            latitude=self.latitude,
            longitude=self.longitude,
            captured_at=captured_at,
        )


# ── PromptBuilder ─────────────────────────────────────────────────────────────

class PromptBuilder:
    """
    Builds the guardian analysis prompt and model request parts.

    The prompt pins the output to a single JSON object with the five fields
    the response validator expects. Unknown sensor values are stated as
    ``Unknown`` rather than omitted so the model does not invent them.
    """

    _TEMPLATE: str = (
        "You are an AI Safety Guardian analyzing a real-world environment.\n"
        "User Query:\n"
        "{query}\n\n"
        "Environment Data:\n"
        "Latitude: {latitude}\n"
        "Longitude: {longitude}\n"
        "Timestamp: {timestamp}\n"
        "{extra}"
        "\n"
        "Instructions:\n"
        "Analyze lighting conditions from the image if provided.\n"
        "Detect presence of people.\n"
        "Detect signs of aggression or threat.\n"
        "Detect isolation level (crowded vs empty).\n"
        "Infer risk level from 0 to 10.\n"
        "If lighting is poor, suggest moving to a brighter area.\n"
        "If isolation risk is high, suggest moving to a populated area.\n\n"
        "Respond with one valid JSON object only. No markdown, no backticks, "
        "no comments, no text before or after the object.\n"
        "\"confidence\" must be a decimal number between 0 and 1 (example: 0.82).\n"
        "\"risk_level\" must be an integer between 0 and 10.\n"
        "All keys must be enclosed in double quotes.\n\n"
        "Return JSON in this exact format:\n"
        "{{\n"
        "  \"risk_level\": number,\n"
        "  \"confidence\": number,\n"
        "  \"spoken_response\": \"short 1-2 sentence guardian-style response including 'I recommend...'\",\n"
        "  \"recommendations\": [\"string\", \"string\"],\n"
        "  \"should_alert_emergency\": true/false\n"
        "}}\n"
    )

    def build(self, request: AnalysisRequest) -> str:
        """
        Render the prompt text for ``request``.

        Args:
            request: The assembled analysis request.

        Returns:
            The full prompt string.
        """
        extra_lines = []
        if request.brightness is not None:
            extra_lines.append(f"Camera brightness (0-255): {request.brightness:.0f}\n")
        if request.sound_level is not None:
            extra_lines.append(f"Ambient sound level (dB): {request.sound_level:.0f}\n")

        prompt = self._TEMPLATE.format(
            query=request.query_text.strip(),
            latitude=request.latitude if request.latitude is not None else "Unknown",
            longitude=request.longitude if request.longitude is not None else "Unknown",
            timestamp=request.captured_at.isoformat(),
            extra="".join(extra_lines),
        )
        logger.debug("PromptBuilder: prompt (%d chars)", len(prompt))
        return prompt

    def build_parts(self, request: AnalysisRequest) -> list[dict[str, Any]]:
        """
        Serialise ``request`` into model request parts.

        The text part always comes first; the camera frame follows as an
        inline JPEG part when present and decodable.

        Returns:
            ``[{"text": ...}]`` or ``[{"text": ...}, {"inline_data": {...}}]``.
        """
        parts: list[dict[str, Any]] = [{"text": self.build(request)}]
        if request.has_image:
            try:
                data = base64.b64decode(request.image_base64, validate=True)
            except (binascii.Error, ValueError) as exc:
                logger.warning("Dropping undecodable image frame: %s", exc)
                return parts
            parts.append({
                "inline_data": {"mime_type": C.IMAGE_MIME_TYPE, "data": data},
            })
        return parts
