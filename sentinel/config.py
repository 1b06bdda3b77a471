"""Configuration for the sentinel detector."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_CONFIG_CANDIDATES = (
    Path("configs/sentinel_config_v2.toml"),
    Path("sentinel_config_v2.toml"),
)


class ConfigurationError(ValueError):
    """Raised when the sentinel configuration cannot be loaded or is invalid."""


class SolanaConfig(BaseModel):
    ws_url: str
    rpc_url: str
    program_id: str
    admin_config_pubkey: str
    commitment: Optional[str] = None


class FuzzyConfig(BaseModel):
    """Ranges from which the per-epoch thresholds are drawn."""

    jitter_epoch_secs: int = Field(default=60, ge=0)
    guest_request_min: int = Field(ge=0)
    guest_request_max: int = Field(ge=0)
    acceleration_min: float
    acceleration_max: float
    scissor_gap_min: float
    scissor_gap_max: float
    low_entropy_min: float
    low_entropy_max: float
    verified_absence_rate_max_min: float
    verified_absence_rate_max_max: float
    edge_noise_bps: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "FuzzyConfig":
        for label, low, high in self.ranges():
            if low > high:
                raise ValueError(f"fuzzy range {label} has min {low} above max {high}")
        return self

    def ranges(self) -> Tuple[Tuple[str, float, float], ...]:
        return (
            ("guest_request", float(self.guest_request_min), float(self.guest_request_max)),
            ("acceleration", self.acceleration_min, self.acceleration_max),
            ("scissor_gap", self.scissor_gap_min, self.scissor_gap_max),
            ("low_entropy", self.low_entropy_min, self.low_entropy_max),
            (
                "verified_absence_rate",
                self.verified_absence_rate_max_min,
                self.verified_absence_rate_max_max,
            ),
        )


class VotingWeights(BaseModel):
    dimension_a_weight: float = Field(default=1.0, ge=0.0)
    dimension_b_weight: float = Field(default=1.0, ge=0.0)
    dimension_c_weight: float = Field(default=1.0, ge=0.0)


class ResponseThresholds(BaseModel):
    mild_probability: float = Field(ge=0.0, le=1.0)
    severe_probability: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_order(self) -> "ResponseThresholds":
        if self.mild_probability > self.severe_probability:
            raise ValueError("mild_probability must not exceed severe_probability")
        return self


class ThresholdConfig(BaseModel):
    window_secs: int = Field(gt=0)
    guest_dignity_score: int = Field(ge=0, le=255)
    verified_user_mode: Optional[int] = Field(default=None, ge=0, le=255)
    min_samples_for_growth: int = Field(default=1, ge=1)
    dedupe_ttl_secs: int = Field(ge=0)
    fuzzy: FuzzyConfig
    voting: VotingWeights = Field(default_factory=VotingWeights)
    response: ResponseThresholds


class GovernanceConfig(BaseModel):
    authority_keypair_path: str
    min_action_interval_secs: int = Field(default=0, ge=0)


class RigConfig(BaseModel):
    """Advisory agent settings (an OpenAI compatible chat completions endpoint)."""

    enabled: bool = False
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    timeout_secs: Optional[float] = Field(default=None, gt=0)

    def resolved_api_key(self) -> Optional[str]:
        return self.api_key or os.environ.get("OPENAI_API_KEY")


class RuntimeConfig(BaseModel):
    event_channel_capacity: int = Field(default=1024, ge=1)
    reconnect_backoff_ms: int = Field(default=1500, ge=0)


class SentinelSettings(BaseSettings):
    """Root settings. File values can be overridden by ``SENTINEL_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="SENTINEL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    solana: SolanaConfig
    thresholds: ThresholdConfig
    governance: GovernanceConfig
    rig: RigConfig = Field(default_factory=RigConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables take precedence over values read from the file.
        return env_settings, init_settings, file_secret_settings

    @property
    def verified_user_mode(self) -> int:
        mode = self.thresholds.verified_user_mode
        return 2 if mode is None else mode


def default_config_path() -> Path:
    for candidate in DEFAULT_CONFIG_CANDIDATES:
        if candidate.exists():
            return candidate
    return DEFAULT_CONFIG_CANDIDATES[-1]


def settings_from_mapping(data: Dict[str, Any]) -> SentinelSettings:
    try:
        return SentinelSettings(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid sentinel configuration: {exc}") from exc


def load_settings(path: Optional[str | Path] = None) -> SentinelSettings:
    """Read the TOML configuration at ``path`` (or the default location)."""

    config_path = Path(path) if path is not None else default_config_path()
    try:
        raw = config_path.read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"failed to read config file {config_path}: {exc}") from exc
    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"invalid config TOML in {config_path}: {exc}") from exc

    settings = settings_from_mapping(data)
    logger.debug("configuration loaded path=%s", config_path)
    return settings


__all__ = [
    "ConfigurationError",
    "FuzzyConfig",
    "GovernanceConfig",
    "ResponseThresholds",
    "RigConfig",
    "RuntimeConfig",
    "SentinelSettings",
    "SolanaConfig",
    "ThresholdConfig",
    "VotingWeights",
    "default_config_path",
    "load_settings",
    "settings_from_mapping",
]
