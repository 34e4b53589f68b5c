"""
Runtime facade.

EnrichmentRuntime wires the stores, provider, fetchers, run manager,
reconciliation tracker, conversion resolver and scheduler together and
exposes the caller surface. Every method returns wire dictionaries
(camelCase keys, ISO-8601 timestamps) built from the pydantic schemas.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from .config import EnrichmentSettings, load_settings
from .constants import Schedules, SettingKeys
from .conversion import ConversionResolver
from .exceptions import ProviderConfigurationError, ValoraNotFoundError, ValoraValidationError
from .fetchers import CategoryFetcher, LedgerReader, UnavailableFetcher, build_default_fetchers
from .jobs import refresh_stale_categories
from .logging_config import setup_logging
from .models import CATEGORY_ORDER, EnrichmentCategory, EnrichmentScope, utc_now
from .panel import export_failed_items
from .providers import EnrichmentProvider, is_provider_configured, resolve_enrichment_provider
from .reconciliation import ReconciliationTracker
from .repository import MarketDataRepository, create_market_data_repository
from .retry import RetryConfig
from .runs import EnrichmentRunManager
from .scheduler import EnrichmentScheduler
from .schemas import (
    BaseCurrencyImpactState,
    ConfigState,
    ConversionResultSchema,
    PanelSnapshot,
    ReconciliationSchema,
    RunSnapshot,
    ScopeRequest,
    StartRunResponse,
    SuccessResponse,
)
from .storage import AppSettings, JsonValue, SettingsStore, create_settings_store

logger = logging.getLogger("valora.runtime")

# Keys owned by the runtime itself; callers cannot overwrite them directly.
_PROTECTED_KEYS = frozenset({SettingKeys.RECONCILIATION_STATE, SettingKeys.CATEGORY_FRESHNESS})


class EnrichmentRuntime:
    """Composition root and caller surface for market-data enrichment."""

    def __init__(
        self,
        settings: EnrichmentSettings,
        ledger: LedgerReader,
        adapters: Optional[Mapping[str, EnrichmentProvider]] = None,
        *,
        settings_store: Optional[SettingsStore] = None,
        repository: Optional[MarketDataRepository] = None,
        fetchers: Optional[Mapping[EnrichmentCategory, CategoryFetcher]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.settings_store = settings_store or create_settings_store(settings.settings_dsn)
        self.repository = repository or create_market_data_repository(settings.market_data_dsn)
        self.app_settings = AppSettings(self.settings_store)
        self.tracker = ReconciliationTracker(self.app_settings, clock=clock)
        self.resolver = ConversionResolver(self.repository)

        if fetchers is None:
            fetchers = self._build_fetchers(ledger, adapters or {})
        self.manager = EnrichmentRunManager(fetchers, self.tracker, self.app_settings, clock=clock)
        self.scheduler = EnrichmentScheduler()

    def _build_fetchers(
        self,
        ledger: LedgerReader,
        adapters: Mapping[str, EnrichmentProvider],
    ) -> Dict[EnrichmentCategory, CategoryFetcher]:
        try:
            provider = resolve_enrichment_provider(self.settings, adapters)
        except ProviderConfigurationError as e:
            logger.warning("Enrichment provider unavailable: %s", e.message, extra=e.details)
            return {category: UnavailableFetcher(category, e) for category in CATEGORY_ORDER}

        retry = RetryConfig(
            max_retries=self.settings.retry.max_retries,
            base_delay=self.settings.retry.base_delay,
            max_delay=self.settings.retry.max_delay,
        )
        return build_default_fetchers(provider, self.repository, ledger, self.app_settings, retry)

    # ------------------------------------------------------------------
    # Runs and panel
    # ------------------------------------------------------------------

    async def get_panel_state(self) -> dict[str, Any]:
        state = await self.manager.get_panel_state()
        return PanelSnapshot.from_state(state).to_dict()

    async def start_run(self, scope: ScopeRequest | EnrichmentScope | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(scope, EnrichmentScope):
            resolved = scope
        elif isinstance(scope, ScopeRequest):
            resolved = scope.to_scope()
        else:
            resolved = ScopeRequest.model_validate(scope).to_scope()
        result = await self.manager.start_run(resolved)
        return StartRunResponse(
            created_new_run=result.created_new_run,
            run=RunSnapshot.from_run(result.run),
        ).to_dict()

    def cancel_run(self, run_id: str) -> dict[str, Any]:
        return SuccessResponse(success=self.manager.cancel_run(run_id)).to_dict()

    def send_to_background(self, run_id: str) -> dict[str, Any]:
        return SuccessResponse(success=self.manager.send_to_background(run_id)).to_dict()

    def get_run_summary(self, run_id: str) -> Optional[dict[str, Any]]:
        snapshot = RunSnapshot.from_run(self.manager.get_run_summary(run_id))
        return snapshot.to_dict() if snapshot else None

    def export_failed_items(self, run_id: str) -> str:
        run = self.manager.get_run_summary(run_id)
        if run is None:
            raise ValoraNotFoundError("EnrichmentRun", run_id)
        return export_failed_items(run)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_config_state(self) -> dict[str, Any]:
        return ConfigState(
            provider_configured=is_provider_configured(self.settings),
            base_currency_configured=await self.app_settings.get_base_currency() is not None,
        ).to_dict()

    async def get_app_setting(self, key: str) -> Optional[JsonValue]:
        return await self.app_settings.get_raw(key)

    async def set_app_setting(self, key: str, value: JsonValue) -> None:
        if key in _PROTECTED_KEYS:
            raise ValoraValidationError(f"Setting '{key}' is read-only", field=key)
        if key == SettingKeys.BASE_CURRENCY:
            if not isinstance(value, str):
                raise ValoraValidationError("Base currency must be a currency code", field=key)
            await self.tracker.set_base_currency(value)
            return
        await self.app_settings.set_raw(key, value)

    async def get_base_currency_impact_state(self) -> dict[str, Any]:
        return BaseCurrencyImpactState(
            base_currency=await self.app_settings.get_base_currency(),
            reconciliation=ReconciliationSchema.from_state(await self.tracker.get_state()),
        ).to_dict()

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    async def convert_amount(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
        as_of_date: date | str,
    ) -> dict[str, Any]:
        result = await self.resolver.convert_amount(amount, source_currency, target_currency, as_of_date)
        return ConversionResultSchema.from_result(result).to_dict()

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    async def refresh_stale(self):
        """One freshness pass; the scheduled job calls this."""
        return await refresh_stale_categories(
            self.manager,
            timedelta(hours=self.settings.freshness_max_age_hours),
            clock=self._clock,
        )

    def start_background_refresh(self) -> None:
        """Schedule periodic freshness checks; needs a running event loop."""
        self.scheduler.add_interval_job(
            self.refresh_stale,
            Schedules.FRESHNESS_JOB_ID,
            seconds=self.settings.freshness_check_interval_seconds,
        )
        self.scheduler.start()

    def stop_background_refresh(self) -> None:
        self.scheduler.remove_job(Schedules.FRESHNESS_JOB_ID)
        self.scheduler.shutdown()

    async def shutdown(self) -> None:
        self.stop_background_refresh()
        await self.manager.shutdown()
        for resource in (self.settings_store, self.repository):
            close = getattr(resource, "close", None)
            if close is not None:
                close()
        logger.info("Enrichment runtime stopped")


async def create_runtime(
    ledger: LedgerReader,
    adapters: Optional[Mapping[str, EnrichmentProvider]] = None,
    settings: Optional[EnrichmentSettings] = None,
) -> EnrichmentRuntime:
    """Build a runtime from environment configuration with logging set up."""
    settings = settings or load_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    runtime = EnrichmentRuntime(settings, ledger, adapters)
    if settings.background_refresh_enabled:
        runtime.start_background_refresh()
    logger.info(
        "Enrichment runtime ready",
        extra={"environment": settings.environment, "provider": settings.enrichment_provider or None},
    )
    return runtime
