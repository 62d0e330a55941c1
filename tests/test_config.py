"""
tests/test_config.py — Loading and validation of guardian.yaml.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from core.config import GuardianConfig, load_config
from core.constants import C


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "guardian.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoadConfig:

    def test_shipped_file_matches_defaults(self, monkeypatch) -> None:
        monkeypatch.delenv("GUARDIAN_CONFIG", raising=False)
        config = load_config()
        assert config.gateway.timeout_s == C.GATEWAY_TIMEOUT_S
        assert config.gateway.max_retries == C.GATEWAY_MAX_RETRIES
        assert config.analysis.use_fallback is False
        assert config.emergency.contact_name == C.EMERGENCY_CONTACT_NAME

    def test_file_values_win(self, tmp_path: Path) -> None:
        path = _write(tmp_path, {
            "gateway": {"timeout_s": 20.0, "fallback_enabled": False},
            "emergency": {"contact_name": "Dad"},
        })
        config = load_config(path)
        assert config.gateway.timeout_s == 20.0
        assert config.gateway.fallback_enabled is False
        assert config.gateway.max_retries == C.GATEWAY_MAX_RETRIES
        assert config.emergency.contact_name == "Dad"

    def test_overrides_merge_on_top(self, tmp_path: Path) -> None:
        path = _write(tmp_path, {"analysis": {"use_fallback": True, "min_query_chars": 8}})
        config = load_config(path, overrides={"analysis": {"min_query_chars": 2}})
        assert config.analysis.use_fallback is True
        assert config.analysis.min_query_chars == 2

    def test_env_var_is_honoured(self, tmp_path: Path, monkeypatch) -> None:
        path = _write(tmp_path, {"server": {"port": 8080}})
        monkeypatch.setenv("GUARDIAN_CONFIG", str(path))
        assert load_config().server.port == 8080

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == GuardianConfig()

    def test_missing_explicit_path(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_env_path(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("GUARDIAN_CONFIG", str(tmp_path / "nope.yaml"))
        with pytest.raises(FileNotFoundError):
            load_config()

    def test_config_is_frozen(self) -> None:
        config = GuardianConfig()
        with pytest.raises(AttributeError):
            config.gateway.timeout_s = 1.0  # type: ignore[misc]


class TestValidation:

    def test_unknown_key_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid config value"):
            load_config(_write(tmp_path, {"gateway": {"retries": 3}}))

    def test_non_mapping_section_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(_write(tmp_path, {"gateway": [1, 2]}))

    def test_non_mapping_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(path)

    @pytest.mark.parametrize("overrides, fragment", [
        ({"gateway": {"timeout_s": 0}}, "timeout_s"),
        ({"gateway": {"max_retries": -1}}, "max_retries"),
        ({"gateway": {"retry_delay_s": -1.0}}, "delays"),
        ({"analysis": {"geolocation_timeout_s": 0}}, "geolocation_timeout_s"),
        ({"sensors": {"jpeg_quality": 0}}, "jpeg_quality"),
        ({"sensors": {"jpeg_quality": 101}}, "jpeg_quality"),
        ({"sensors": {"max_image_bytes": 0}}, "max_image_bytes"),
        ({"sensors": {"latitude": 10.0}}, "together"),
        ({"sensors": {"latitude": 91.0, "longitude": 0.0}}, "latitude"),
        ({"sensors": {"latitude": 0.0, "longitude": 181.0}}, "longitude"),
        ({"tts": {"volume": 1.5}}, "volume"),
        ({"emergency": {"siren_duration_s": 0}}, "siren_duration_s"),
    ])
    def test_range_checks(self, tmp_path: Path, overrides: dict, fragment: str) -> None:
        path = _write(tmp_path, {})
        with pytest.raises(ValueError, match=fragment):
            load_config(path, overrides=overrides)
