"""Tests for environment-driven configuration."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from valora_enrichment.config import EnrichmentSettings, load_settings


@pytest.fixture(autouse=True)
def clear_settings_cache():
    load_settings.cache_clear()
    yield
    load_settings.cache_clear()


def test_defaults(monkeypatch):
    monkeypatch.delenv("VALORA_SETTINGS_DSN", raising=False)
    monkeypatch.delenv("VALORA_MARKET_DATA_DSN", raising=False)

    settings = EnrichmentSettings(_env_file=None)

    assert settings.settings_dsn.startswith("sqlite:///")
    assert settings.enrichment_provider == ""
    assert settings.retry.max_retries == 2
    assert settings.freshness_max_age_hours == 24
    assert not settings.background_refresh_enabled


def test_prefixed_and_legacy_provider_env(monkeypatch):
    monkeypatch.setenv("ENRICHMENT_PROVIDER", " TwelveData ")
    monkeypatch.setenv("TWELVEDATA_API_KEY", "secret")

    settings = EnrichmentSettings(_env_file=None)

    assert settings.enrichment_provider == "twelvedata"
    assert settings.twelvedata_api_key == "secret"


def test_nested_retry_env(monkeypatch):
    monkeypatch.setenv("VALORA_RETRY__MAX_RETRIES", "5")
    monkeypatch.setenv("VALORA_BACKGROUND_REFRESH_ENABLED", "true")

    settings = EnrichmentSettings(_env_file=None)

    assert settings.retry.max_retries == 5
    assert settings.background_refresh_enabled


@pytest.mark.parametrize("dsn", ["postgresql://db/valora", "sqlite://relative.db", ""])
def test_rejects_unsupported_dsn(dsn):
    with pytest.raises(ValidationError):
        EnrichmentSettings(settings_dsn=dsn, _env_file=None)


def test_rejects_non_positive_intervals():
    with pytest.raises(ValidationError):
        EnrichmentSettings(freshness_check_interval_seconds=0, _env_file=None)


def test_load_settings_is_cached():
    assert load_settings() is load_settings()
