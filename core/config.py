"""
core/config.py — Typed configuration loader for Sentinel Guardian.

Loads config/guardian.yaml and validates all values into typed dataclasses.
All downstream modules import from this module; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from core.constants import C

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Dataclass hierarchy (mirrors guardian.yaml)
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class GatewayConfig:
    """Remote reasoning gateway settings."""

    model_id: str = C.MODEL_ID
    api_key_env: str = "GEMINI_API_KEY"
    timeout_s: float = C.GATEWAY_TIMEOUT_S
    max_retries: int = C.GATEWAY_MAX_RETRIES
    retry_delay_s: float = C.RETRY_DELAY_S
    service_unavailable_delay_s: float = C.SERVICE_UNAVAILABLE_DELAY_S
    fallback_enabled: bool = True

    @property
    def api_key(self) -> str:
        """Return the API key from the configured environment variable (may be empty)."""
        return os.environ.get(self.api_key_env, "").strip()


@dataclass(frozen=True)
class AnalysisConfig:
    """Orchestrator behaviour."""

    geolocation_timeout_s: float = C.GEOLOCATION_TIMEOUT_S
    use_fallback: bool = False
    min_query_chars: int = C.MIN_QUERY_CHARS


@dataclass(frozen=True)
class SensorConfig:
    """Camera and location collectors."""

    camera_index: int = 0
    frame_width: int = C.FRAME_WIDTH
    frame_height: int = C.FRAME_HEIGHT
    jpeg_quality: int = C.JPEG_QUALITY
    max_image_bytes: int = C.MAX_IMAGE_BYTES
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class EmergencyConfig:
    """Emergency contact and siren configuration."""

    contact_name: str = C.EMERGENCY_CONTACT_NAME
    contact_phone: str = C.EMERGENCY_CONTACT_PHONE
    siren_duration_s: float = C.SIREN_DURATION_S
    siren_hi_hz: float = C.SIREN_HI_HZ
    siren_lo_hz: float = C.SIREN_LO_HZ


@dataclass(frozen=True)
class TTSConfig:
    """Text-to-speech engine configuration."""

    rate: int = 165
    volume: float = 1.0
    voice_id: Optional[str] = None


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 5000


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = "logs"


@dataclass(frozen=True)
class GuardianConfig:
    """Root configuration object — single source of truth for all settings."""

    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    sensors: SensorConfig = field(default_factory=SensorConfig)
    emergency: EmergencyConfig = field(default_factory=EmergencyConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def _merge(defaults: dict, overrides: dict) -> dict:
    """
    Deep-merge *overrides* into *defaults*, returning a new dict.

    Nested dicts are merged recursively; scalar values in overrides win.
    """
    result: dict = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got: {type(value).__name__}")
    return value


def _resolve_path(config_path: Path | str | None) -> Path | None:
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {resolved}")
        return resolved
    if "GUARDIAN_CONFIG" in os.environ:
        resolved = Path(os.environ["GUARDIAN_CONFIG"])
        if not resolved.exists():
            raise FileNotFoundError(
                f"GUARDIAN_CONFIG points to missing file: {resolved}"
            )
        return resolved
    candidate = Path(__file__).resolve().parent.parent / "config" / "guardian.yaml"
    if candidate.exists():
        return candidate
    return None


def load_config(
    config_path: Path | str | None = None,
    overrides: dict | None = None,
) -> GuardianConfig:
    """
    Load, validate, and return a GuardianConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. GUARDIAN_CONFIG environment variable
    3. ``config/guardian.yaml`` at the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``guardian.yaml`` file.
        overrides: Optional nested dict applied on top of the file values.

    Returns:
        A fully populated and frozen :class:`GuardianConfig` instance.

    Raises:
        ValueError: If a field has an unknown name, invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path = _resolve_path(config_path)

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    if overrides:
        raw = _merge(raw, overrides)

    try:
        config = GuardianConfig(
            gateway=GatewayConfig(**_section(raw, "gateway")),
            analysis=AnalysisConfig(**_section(raw, "analysis")),
            sensors=SensorConfig(**_section(raw, "sensors")),
            emergency=EmergencyConfig(**_section(raw, "emergency")),
            tts=TTSConfig(**_section(raw, "tts")),
            server=ServerConfig(**_section(raw, "server")),
            logging=LoggingConfig(**_section(raw, "logging")),
        )
    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(config)
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(config: GuardianConfig) -> None:
    """
    Validate range constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    gw = config.gateway
    if gw.timeout_s <= 0:
        raise ValueError(f"gateway.timeout_s must be positive, got {gw.timeout_s}")
    if gw.max_retries < 0:
        raise ValueError(f"gateway.max_retries must be >= 0, got {gw.max_retries}")
    if gw.retry_delay_s < 0 or gw.service_unavailable_delay_s < 0:
        raise ValueError("gateway retry delays must be >= 0")
    if config.analysis.geolocation_timeout_s <= 0:
        raise ValueError(
            f"analysis.geolocation_timeout_s must be positive, got "
            f"{config.analysis.geolocation_timeout_s}"
        )

    sensors = config.sensors
    if not (1 <= sensors.jpeg_quality <= 100):
        raise ValueError(f"sensors.jpeg_quality must be in [1, 100], got {sensors.jpeg_quality}")
    if sensors.max_image_bytes <= 0:
        raise ValueError(f"sensors.max_image_bytes must be positive, got {sensors.max_image_bytes}")
    if (sensors.latitude is None) != (sensors.longitude is None):
        raise ValueError("sensors.latitude and sensors.longitude must be set together")
    if sensors.latitude is not None and not (-90.0 <= sensors.latitude <= 90.0):
        raise ValueError(f"sensors.latitude must be in [-90, 90], got {sensors.latitude}")
    if sensors.longitude is not None and not (-180.0 <= sensors.longitude <= 180.0):
        raise ValueError(f"sensors.longitude must be in [-180, 180], got {sensors.longitude}")

    if not (0.0 <= config.tts.volume <= 1.0):
        raise ValueError(f"tts.volume must be in [0, 1], got {config.tts.volume}")
    if config.emergency.siren_duration_s <= 0:
        raise ValueError(
            f"emergency.siren_duration_s must be positive, got {config.emergency.siren_duration_s}"
        )
