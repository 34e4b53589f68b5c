"""Canonical configuration surface for the Valora enrichment runtime."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings

from .constants import MEMORY_DSN, SQLITE_DSN_PREFIX, RetryDefaults, Schedules


class RetrySettings(BaseSettings):
    """Transient retry policy for provider calls."""
    max_retries: int = RetryDefaults.MAX_RETRIES
    base_delay: float = RetryDefaults.BASE_DELAY
    max_delay: float = RetryDefaults.MAX_DELAY


class EnrichmentSettings(BaseSettings):
    """Main enrichment runtime configuration."""

    # Environment
    environment: Literal["dev", "test", "prod"] = "dev"

    # Persistence
    settings_dsn: str = "sqlite:///./data/valora_settings.db"
    market_data_dsn: str = "sqlite:///./data/valora_market_data.db"

    # Provider selection (unprefixed names kept for existing deployments)
    enrichment_provider: str = Field(
        default="",
        validation_alias=AliasChoices(
            "enrichment_provider",
            "VALORA_ENRICHMENT_PROVIDER",
            "ENRICHMENT_PROVIDER",
        ),
    )
    twelvedata_api_key: str = Field(
        default="",
        validation_alias=AliasChoices(
            "twelvedata_api_key",
            "VALORA_TWELVEDATA_API_KEY",
            "TWELVEDATA_API_KEY",
        ),
    )

    retry: RetrySettings = Field(default_factory=RetrySettings)

    # Background freshness checks
    background_refresh_enabled: bool = False
    freshness_check_interval_seconds: int = Schedules.FRESHNESS_CHECK_INTERVAL_SECONDS
    freshness_max_age_hours: int = Schedules.FRESHNESS_MAX_AGE_HOURS

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "VALORA_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @field_validator("settings_dsn", "market_data_dsn")
    @classmethod
    def validate_dsn(cls, v: str) -> str:
        if v == MEMORY_DSN or v.startswith(SQLITE_DSN_PREFIX):
            return v
        raise ValueError(f"unsupported DSN: {v} (expected {MEMORY_DSN} or {SQLITE_DSN_PREFIX}<path>)")

    @field_validator("enrichment_provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("freshness_check_interval_seconds", "freshness_max_age_hours")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> EnrichmentSettings:
    """Load EnrichmentSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return EnrichmentSettings(_env_file=env_path)
