"""Shared fixtures for the enrichment test suite."""
from __future__ import annotations

import os
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

os.environ.setdefault("VALORA_ENVIRONMENT", "test")
os.environ.setdefault("VALORA_SETTINGS_DSN", "memory://")
os.environ.setdefault("VALORA_MARKET_DATA_DSN", "memory://")

from valora_enrichment.fetchers import (  # noqa: E402
    HeldSecurity,
    InMemoryLedgerReader,
    build_default_fetchers,
)
from valora_enrichment.providers import StaticEnrichmentProvider  # noqa: E402
from valora_enrichment.reconciliation import ReconciliationTracker  # noqa: E402
from valora_enrichment.repository import InMemoryMarketDataRepository  # noqa: E402
from valora_enrichment.retry import RetryConfig  # noqa: E402
from valora_enrichment.runs import EnrichmentRunManager  # noqa: E402
from valora_enrichment.storage import AppSettings, InMemorySettingsStore  # noqa: E402


class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


NO_RETRY = RetryConfig(max_retries=0, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_store():
    return InMemorySettingsStore()


@pytest.fixture
def app_settings(settings_store):
    return AppSettings(settings_store)


@pytest.fixture
def tracker(app_settings, clock):
    return ReconciliationTracker(app_settings, clock=clock)


@pytest.fixture
def repository():
    return InMemoryMarketDataRepository()


@pytest.fixture
def provider():
    return StaticEnrichmentProvider()


@pytest.fixture
def ledger():
    return InMemoryLedgerReader(
        securities=[
            HeldSecurity("AAPL", "XNAS", date(2024, 1, 2)),
            HeldSecurity("SHOP", "XTSE", date(2024, 1, 5)),
        ],
        currencies=["USD", "CAD", "EUR"],
    )


@pytest.fixture
def fetchers(provider, repository, ledger, app_settings):
    return build_default_fetchers(provider, repository, ledger, app_settings, NO_RETRY)


@pytest.fixture
def manager(fetchers, tracker, app_settings, clock):
    return EnrichmentRunManager(fetchers, tracker, app_settings, clock=clock)
