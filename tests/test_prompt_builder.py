"""
tests/test_prompt_builder.py — Prompt text, request parts and wire payload.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from llm.prompt_builder import AnalysisRequest, PromptBuilder, SafetyPayload

WHEN = datetime(2024, 5, 1, 21, 30, tzinfo=timezone.utc)


@pytest.fixture()
def builder() -> PromptBuilder:
    return PromptBuilder()


class TestPrompt:

    def test_known_values_are_stated(self, builder: PromptBuilder) -> None:
        request = AnalysisRequest(
            query_text="  Is it safe here?  ",
            latitude=12.9716,
            longitude=77.5946,
            captured_at=WHEN,
        )
        prompt = builder.build(request)
        assert "User Query:\nIs it safe here?\n" in prompt
        assert "Latitude: 12.9716" in prompt
        assert "Longitude: 77.5946" in prompt
        assert "Timestamp: 2024-05-01T21:30:00+00:00" in prompt

    def test_unknown_location(self, builder: PromptBuilder) -> None:
        prompt = builder.build(AnalysisRequest(query_text="check around"))
        assert "Latitude: Unknown" in prompt
        assert "Longitude: Unknown" in prompt
        assert "brightness" not in prompt

    def test_schema_fields_requested(self, builder: PromptBuilder) -> None:
        prompt = builder.build(AnalysisRequest(query_text="check around"))
        for name in ("risk_level", "confidence", "spoken_response",
                     "recommendations", "should_alert_emergency"):
            assert f'"{name}"' in prompt

    def test_optional_readings(self, builder: PromptBuilder) -> None:
        prompt = builder.build(AnalysisRequest(
            query_text="check around", brightness=17.4, sound_level=62,
        ))
        assert "Camera brightness (0-255): 17" in prompt
        assert "Ambient sound level (dB): 62" in prompt


class TestParts:

    def test_text_only(self, builder: PromptBuilder) -> None:
        parts = builder.build_parts(AnalysisRequest(query_text="check around"))
        assert len(parts) == 1
        assert "text" in parts[0]

    def test_image_part_follows_text(self, builder: PromptBuilder) -> None:
        parts = builder.build_parts(AnalysisRequest(query_text="check", image_base64="anBlZw=="))
        assert list(parts[0]) == ["text"]
        assert parts[1] == {"inline_data": {"mime_type": "image/jpeg", "data": b"jpeg"}}

    def test_undecodable_image_dropped(self, builder: PromptBuilder) -> None:
        parts = builder.build_parts(AnalysisRequest(query_text="check", image_base64="***"))
        assert len(parts) == 1


class TestRequest:

    @pytest.mark.parametrize("text", ["", "   "])
    def test_blank_query_rejected(self, text: str) -> None:
        with pytest.raises(ValueError):
            AnalysisRequest(query_text=text)

    def test_payload_shape(self) -> None:
        payload = AnalysisRequest(query_text="q", captured_at=WHEN).to_payload()
        assert payload == {
            "user_text": "q",
            "image_frame_base64": "no-image",
            "latitude": None,
            "longitude": None,
            "timestamp": "2024-05-01T21:30:00+00:00",
        }

    def test_payload_round_trip(self) -> None:
        original = AnalysisRequest(
            query_text="q", image_base64="anBlZw==", latitude=1.0, longitude=2.0, captured_at=WHEN,
        )
        restored = SafetyPayload.model_validate(original.to_payload()).to_request()
        assert restored == original

    def test_placeholder_image_means_none(self) -> None:
        request = SafetyPayload(user_text="q", image_frame_base64="no-image").to_request()
        assert request.has_image is False
        assert request.has_location is False

    @pytest.mark.parametrize("body", [{}, {"user_text": ""}, {"user_text": "  "}])
    def test_payload_requires_text(self, body: dict) -> None:
        with pytest.raises(ValidationError):
            SafetyPayload.model_validate(body)
