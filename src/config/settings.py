# src/config/settings.py — v3
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for all deployment-specific settings: storage
backends, resilience tuning, vision provider selection, identification
thresholds and logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shelfscan.cache.service import ttl_days_for_tier


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Vision provider ===
    vision_provider: str = "google"
    vision_model: str = "gemini-2.0-flash"
    vision_max_tokens: int = 1024
    vision_call_spacing_s: float = 0.0
    tier2_timeout_s: float = 3.0
    tier4_timeout_s: float = 8.0

    # Provider API keys
    anthropic_api_key: str = ""
    google_api_key: str = ""

    # === Barcode discovery ===
    barcode_lookup_api_key: str = ""
    barcode_lookup_base_url: str = "https://api.barcodelookup.com/v3"
    discovery_timeout_s: float = 8.0
    discovery_enabled: bool = True

    # === Identification thresholds ===
    min_confidence: float = 0.6
    low_confidence_warning: float = 0.8

    # === Resilience ===
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    rate_limit_max_requests: int = 100
    rate_limit_window_s: float = 60.0
    circuit_failure_threshold: int = 5
    circuit_reset_timeout_s: float = 60.0

    # === Document cache ===
    cache_backend: Literal["json", "sqlite", "redis"] = "sqlite"
    cache_root: Path = Path("~/.shelfscan/cache")
    cache_redis_url: str = ""
    cache_ttl_discovery_days: int = 90
    cache_ttl_analysis_days: int = 30

    # === Product insights ===
    insights_enabled: bool = True
    insights_ttl_days: int = 30
    insights_timeout_s: float = 10.0

    # === Product registry ===
    registry_db_path: Path = Path("~/.shelfscan/registry.db")
    store_proximity_m: float = 100.0
    unknown_store_name: str = "Unknown Store"

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("min_confidence", "low_confidence_warning")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:  # noqa: N805
        if not 0.0 <= v <= 1.0:
            raise ValueError("confidence thresholds must be within [0, 1]")
        return v

    @field_validator("retry_max_attempts", "rate_limit_max_requests", "circuit_failure_threshold")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:  # noqa: N805
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.cache_backend == "redis" and not self.cache_redis_url:
            errors.append("CACHE_BACKEND=redis requires CACHE_REDIS_URL")

        if self.cache_ttl_analysis_days <= 0 or self.cache_ttl_discovery_days <= 0:
            errors.append("CACHE_TTL_*_DAYS must be > 0")

        if self.insights_ttl_days <= 0:
            errors.append("INSIGHTS_TTL_DAYS must be > 0")

        if self.store_proximity_m <= 0:
            errors.append("STORE_PROXIMITY_M must be > 0")

        if self.low_confidence_warning < self.min_confidence:
            errors.append("LOW_CONFIDENCE_WARNING must be >= MIN_CONFIDENCE")

        if self.retry_base_delay_s < 0 or self.vision_call_spacing_s < 0:
            errors.append("Delays must be non-negative")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    def cache_ttl_for_tier(self, tier: int) -> int:
        """TTL in days for a cache entry produced by the given tier.

        Registry and discovery results (tiers 1 and 3) are long-lived;
        freshly analyzed results (tiers 2 and 4) expire sooner.
        """
        return ttl_days_for_tier(tier, self.cache_ttl_discovery_days, self.cache_ttl_analysis_days)

    @property
    def vision_api_key(self) -> str:
        """API key for the configured vision provider."""
        if self.vision_provider == "anthropic":
            return self.anthropic_api_key
        if self.vision_provider == "google":
            return self.google_api_key
        return ""


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-run config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
