"""
Enrichment provider contract and provider resolution.

Network providers (Yahoo, Twelve Data) live outside this package and plug
in by implementing ``EnrichmentProvider``. ``StaticEnrichmentProvider``
serves fixed data for development and tests.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

from .config import EnrichmentSettings
from .exceptions import ProviderConfigurationError
from .repository import PricePoint, RatePoint

logger = logging.getLogger("valora.providers")

SUPPORTED_PROVIDER_IDS = frozenset({"yahoo", "twelvedata", "static"})


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_security_metadata: bool = True
    supports_security_daily_prices: bool = True
    supports_fx_daily_rates: bool = True
    supports_batch_requests: bool = False


@dataclass(frozen=True)
class SecurityMetadataSnapshot:
    symbol: str
    market: str
    display_name: Optional[str] = None
    asset_type: Optional[str] = None
    quote_currency: Optional[str] = None


class EnrichmentProvider(ABC):
    """Abstract interface for market data providers."""

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Provider name."""

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    @abstractmethod
    async def fetch_security_metadata(
        self,
        symbol: str,
        market: str,
    ) -> Optional[SecurityMetadataSnapshot]:
        """Metadata for one listing, or None if the provider has nothing."""

    @abstractmethod
    async def fetch_security_daily_prices(
        self,
        symbol: str,
        market: str,
        start_date: date,
        end_date: date,
    ) -> List[PricePoint]:
        """Daily closes within [start_date, end_date]."""

    @abstractmethod
    async def fetch_fx_daily_rates(
        self,
        source_currency: str,
        target_currency: str,
        start_date: date,
        end_date: date,
    ) -> List[RatePoint]:
        """Daily rates within [start_date, end_date]."""


@dataclass
class StaticEnrichmentProvider(EnrichmentProvider):
    """
    Static provider for development and testing.

    Serves whatever was registered up front. ``failures`` maps an identifier
    (``TICKER/MARKET`` or ``SRC/TGT``) to an exception raised on every call
    for it.
    """

    metadata: Dict[Tuple[str, str], SecurityMetadataSnapshot] = field(default_factory=dict)
    prices: Dict[Tuple[str, str], List[PricePoint]] = field(default_factory=dict)
    rates: Dict[Tuple[str, str], List[RatePoint]] = field(default_factory=dict)
    failures: Dict[str, Exception] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)

    @property
    def provider_id(self) -> str:
        return "static"

    def _maybe_fail(self, identifier: str) -> None:
        self.calls.append(identifier)
        error = self.failures.get(identifier)
        if error is not None:
            raise error

    async def fetch_security_metadata(
        self,
        symbol: str,
        market: str,
    ) -> Optional[SecurityMetadataSnapshot]:
        self._maybe_fail(f"{symbol}/{market}")
        return self.metadata.get((symbol, market))

    async def fetch_security_daily_prices(
        self,
        symbol: str,
        market: str,
        start_date: date,
        end_date: date,
    ) -> List[PricePoint]:
        self._maybe_fail(f"{symbol}/{market}")
        return [
            p for p in self.prices.get((symbol, market), [])
            if start_date <= p.market_date <= end_date
        ]

    async def fetch_fx_daily_rates(
        self,
        source_currency: str,
        target_currency: str,
        start_date: date,
        end_date: date,
    ) -> List[RatePoint]:
        self._maybe_fail(f"{source_currency}/{target_currency}")
        return [
            p for p in self.rates.get((source_currency, target_currency), [])
            if start_date <= p.market_date <= end_date
        ]

    def add_rate(self, source_currency: str, target_currency: str, market_date: date, rate: str) -> None:
        self.rates.setdefault((source_currency, target_currency), []).append(
            RatePoint(market_date=market_date, rate=Decimal(rate))
        )


def resolve_enrichment_provider(
    settings: EnrichmentSettings,
    adapters: Mapping[str, EnrichmentProvider],
) -> EnrichmentProvider:
    """Pick the configured provider adapter.

    Raises:
        ProviderConfigurationError: ``provider_not_configured`` when no provider
            is set, ``provider_not_supported`` for unknown ids or ids with no
            registered adapter, ``provider_config_invalid`` when Twelve Data
            has no API key.
    """
    provider_id = settings.enrichment_provider
    if not provider_id:
        raise ProviderConfigurationError(
            "Provider is not configured",
            error_code="provider_not_configured",
        )

    if provider_id not in SUPPORTED_PROVIDER_IDS:
        raise ProviderConfigurationError(
            f"Provider '{provider_id}' is not supported",
            error_code="provider_not_supported",
            provider_id=provider_id,
        )

    if provider_id == "twelvedata" and not settings.twelvedata_api_key:
        raise ProviderConfigurationError(
            "Provider configuration is invalid",
            error_code="provider_config_invalid",
            provider_id=provider_id,
        )

    adapter = adapters.get(provider_id)
    if adapter is None:
        raise ProviderConfigurationError(
            f"Provider '{provider_id}' has no registered adapter",
            error_code="provider_not_supported",
            provider_id=provider_id,
        )

    logger.info("Using enrichment provider %s", provider_id)
    return adapter


def is_provider_configured(settings: EnrichmentSettings) -> bool:
    provider_id = settings.enrichment_provider
    if provider_id == "twelvedata":
        return bool(settings.twelvedata_api_key)
    return provider_id in SUPPORTED_PROVIDER_IDS
