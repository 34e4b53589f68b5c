"""
Category fetchers: one per enrichment category.

A fetcher enumerates the identifiers it knows about (from the read-only
ledger) and, given those identifiers, yields one outcome per item as it
fetches from the provider and persists the result. Failures are yielded as
``ItemFailure`` values; they never propagate as exceptions.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
    Union,
    runtime_checkable,
)

from .cancellation import CancellationToken
from .conversion import derive_required_fx_pairs
from .exceptions import failure_reason
from .models import EnrichmentCategory
from .providers import EnrichmentProvider
from .ranges import DateWindow, derive_incremental_start_date
from .repository import FxKey, MarketDataRepository, SecurityKey, SecurityMetadataRecord
from .retry import RetryConfig, retry_async
from .storage import AppSettings

logger = logging.getLogger("valora.fetchers")


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


# =============================================================================
# Outcomes
# =============================================================================

@dataclass(frozen=True)
class ItemSuccess:
    identifier: str


@dataclass(frozen=True)
class ItemFailure:
    identifier: str
    reason: str


ItemOutcome = Union[ItemSuccess, ItemFailure]


@runtime_checkable
class CategoryFetcher(Protocol):
    """Contract the run manager drives, one implementation per category."""

    category: EnrichmentCategory

    async def known_identifiers(self) -> List[str]:
        ...

    def fetch(
        self,
        identifiers: Sequence[str],
        token: CancellationToken,
    ) -> AsyncIterator[ItemOutcome]:
        ...


# =============================================================================
# Ledger (read-only)
# =============================================================================

@dataclass(frozen=True)
class HeldSecurity:
    ticker: str
    market: str
    earliest_transaction_date: date


class LedgerReader(Protocol):
    """Read-only view of the ledger used to enumerate work."""

    async def list_held_securities(self) -> List[HeldSecurity]:
        ...

    async def list_account_currencies(self) -> List[str]:
        ...

    async def earliest_transaction_date(self) -> Optional[date]:
        ...


@dataclass
class InMemoryLedgerReader:
    securities: List[HeldSecurity] = field(default_factory=list)
    currencies: List[str] = field(default_factory=list)
    earliest_date: Optional[date] = None

    async def list_held_securities(self) -> List[HeldSecurity]:
        return list(self.securities)

    async def list_account_currencies(self) -> List[str]:
        return list(self.currencies)

    async def earliest_transaction_date(self) -> Optional[date]:
        if self.earliest_date is not None:
            return self.earliest_date
        dates = [s.earliest_transaction_date for s in self.securities]
        return min(dates) if dates else None


# =============================================================================
# Provider-backed fetchers
# =============================================================================

K = TypeVar("K")


@dataclass(frozen=True)
class WorkItem(Generic[K]):
    identifier: str
    key: K
    window: Optional[DateWindow] = None


class ProviderCategoryFetcher(ABC, Generic[K]):
    """Shared plumbing: plan work items, then process them one at a time."""

    category: EnrichmentCategory

    def __init__(
        self,
        provider: EnrichmentProvider,
        repository: MarketDataRepository,
        ledger: LedgerReader,
        retry_config: Optional[RetryConfig] = None,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self._provider = provider
        self._repository = repository
        self._ledger = ledger
        self._retry_config = retry_config or RetryConfig()
        self._today = today
        self._planned: Dict[str, WorkItem[K]] = {}

    @abstractmethod
    async def plan(self) -> List[WorkItem[K]]:
        """Work items derived from the ledger and what is already stored."""

    @abstractmethod
    async def process(self, item: WorkItem[K]) -> None:
        """Fetch and persist one item; raise on failure."""

    async def known_identifiers(self) -> List[str]:
        items = await self.plan()
        self._planned = {item.identifier: item for item in items}
        return list(self._planned)

    async def fetch(
        self,
        identifiers: Sequence[str],
        token: CancellationToken,
    ) -> AsyncIterator[ItemOutcome]:
        for identifier in identifiers:
            if token.cancelled:
                return
            item = self._planned.get(identifier)
            if item is None:
                yield ItemFailure(identifier, f"Unknown {self.category.value} identifier")
                continue
            try:
                await self.process(item)
            except Exception as e:
                reason = failure_reason(e)
                logger.warning("%s %s failed: %s", self.category.value, identifier, reason)
                yield ItemFailure(identifier, reason)
            else:
                yield ItemSuccess(identifier)

    async def _call(self, func, *args):
        return await retry_async(func, *args, config=self._retry_config)

    async def _window(self, earliest: date, last_stored: Optional[date]) -> DateWindow:
        start = derive_incremental_start_date(earliest, last_stored)
        end = self._today()
        return DateWindow(start_date=min(start, end), end_date=end)


class SecurityMetadataFetcher(ProviderCategoryFetcher[SecurityKey]):
    category = EnrichmentCategory.SECURITY_METADATA

    async def plan(self) -> List[WorkItem[SecurityKey]]:
        items: Dict[str, WorkItem[SecurityKey]] = {}
        for held in await self._ledger.list_held_securities():
            key = SecurityKey(held.ticker, held.market)
            items.setdefault(key.identifier, WorkItem(key.identifier, key))
        return list(items.values())

    async def process(self, item: WorkItem[SecurityKey]) -> None:
        snapshot = await self._call(
            self._provider.fetch_security_metadata,
            item.key.ticker,
            item.key.market,
        )
        if snapshot is None:
            return
        await self._repository.upsert_security_metadata_fill_missing(
            SecurityMetadataRecord(
                ticker=item.key.ticker,
                market=item.key.market,
                display_name=snapshot.display_name,
                asset_type=snapshot.asset_type,
                quote_currency=snapshot.quote_currency,
            )
        )


class SecurityPriceFetcher(ProviderCategoryFetcher[SecurityKey]):
    category = EnrichmentCategory.SECURITY_PRICES

    async def plan(self) -> List[WorkItem[SecurityKey]]:
        earliest_by_key: Dict[SecurityKey, date] = {}
        for held in await self._ledger.list_held_securities():
            key = SecurityKey(held.ticker, held.market)
            current = earliest_by_key.get(key)
            if current is None or held.earliest_transaction_date < current:
                earliest_by_key[key] = held.earliest_transaction_date

        items = []
        for key, earliest in earliest_by_key.items():
            last_stored = await self._repository.latest_price_date(key)
            items.append(WorkItem(key.identifier, key, await self._window(earliest, last_stored)))
        return items

    async def process(self, item: WorkItem[SecurityKey]) -> None:
        points = await self._call(
            self._provider.fetch_security_daily_prices,
            item.key.ticker,
            item.key.market,
            item.window.start_date,
            item.window.end_date,
        )
        inserted = await self._repository.insert_missing_security_prices(item.key, points)
        logger.debug("%s: %d new closes", item.identifier, inserted)


class FxRateFetcher(ProviderCategoryFetcher[FxKey]):
    category = EnrichmentCategory.FX_RATES

    def __init__(
        self,
        provider: EnrichmentProvider,
        repository: MarketDataRepository,
        ledger: LedgerReader,
        app_settings: AppSettings,
        retry_config: Optional[RetryConfig] = None,
        today: Callable[[], date] = utc_today,
    ) -> None:
        super().__init__(provider, repository, ledger, retry_config, today)
        self._app_settings = app_settings

    async def plan(self) -> List[WorkItem[FxKey]]:
        base_currency = await self._app_settings.get_base_currency()
        if base_currency is None:
            logger.warning("No base currency configured; nothing to refresh for FX")
            return []

        earliest = await self._ledger.earliest_transaction_date() or self._today()
        items = []
        for key in derive_required_fx_pairs(await self._ledger.list_account_currencies(), base_currency):
            last_stored = await self._repository.latest_fx_date(key)
            items.append(WorkItem(key.identifier, key, await self._window(earliest, last_stored)))
        return items

    async def process(self, item: WorkItem[FxKey]) -> None:
        points = await self._call(
            self._provider.fetch_fx_daily_rates,
            item.key.source_currency,
            item.key.target_currency,
            item.window.start_date,
            item.window.end_date,
        )
        inserted = await self._repository.insert_missing_fx_rates(item.key, points)
        logger.debug("%s: %d new observations", item.identifier, inserted)


class UnavailableFetcher:
    """Stands in for a category whose provider could not be resolved."""

    def __init__(self, category: EnrichmentCategory, error: Exception) -> None:
        self.category = category
        self._error = error

    async def known_identifiers(self) -> List[str]:
        raise self._error

    async def fetch(
        self,
        identifiers: Sequence[str],
        token: CancellationToken,
    ) -> AsyncIterator[ItemOutcome]:
        reason = failure_reason(self._error)
        for identifier in identifiers:
            if token.cancelled:
                return
            yield ItemFailure(identifier, reason)


def build_default_fetchers(
    provider: EnrichmentProvider,
    repository: MarketDataRepository,
    ledger: LedgerReader,
    app_settings: AppSettings,
    retry_config: Optional[RetryConfig] = None,
) -> Dict[EnrichmentCategory, CategoryFetcher]:
    return {
        EnrichmentCategory.SECURITY_METADATA: SecurityMetadataFetcher(
            provider, repository, ledger, retry_config
        ),
        EnrichmentCategory.SECURITY_PRICES: SecurityPriceFetcher(
            provider, repository, ledger, retry_config
        ),
        EnrichmentCategory.FX_RATES: FxRateFetcher(
            provider, repository, ledger, app_settings, retry_config
        ),
    }
