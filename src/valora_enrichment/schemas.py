"""Wire schemas for the caller/UI surface (camelCase keys, ISO timestamps)."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import (
    CategoryFreshness,
    ConversionResult,
    EnrichmentRun,
    EnrichmentScope,
    PanelState,
    ReconciliationState,
)


class ValoraModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ScopeRequest(ValoraModel):
    security_metadata: bool = False
    security_prices: bool = False
    fx_rates: bool = False

    def to_scope(self) -> EnrichmentScope:
        return EnrichmentScope(
            security_metadata=self.security_metadata,
            security_prices=self.security_prices,
            fx_rates=self.fx_rates,
        )


class CategoryProgressSchema(ValoraModel):
    processed: int
    total: int


class FailedItemSchema(ValoraModel):
    category: str
    identifier: str
    reason: str


class RunSnapshot(ValoraModel):
    id: str
    status: str
    scope: ScopeRequest
    category_progress: Dict[str, CategoryProgressSchema] = Field(default_factory=dict)
    failed_items: List[FailedItemSchema] = Field(default_factory=list)
    started_at: datetime
    ended_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: Optional[EnrichmentRun]) -> Optional["RunSnapshot"]:
        if run is None:
            return None
        return cls(
            id=run.id,
            status=run.status.value,
            scope=ScopeRequest(
                security_metadata=run.scope.security_metadata,
                security_prices=run.scope.security_prices,
                fx_rates=run.scope.fx_rates,
            ),
            category_progress={
                category.value: CategoryProgressSchema(processed=p.processed, total=p.total)
                for category, p in run.category_progress.items()
            },
            failed_items=[
                FailedItemSchema(category=i.category.value, identifier=i.identifier, reason=i.reason)
                for i in run.failed_items
            ],
            started_at=run.started_at,
            ended_at=run.ended_at,
        )


class FreshnessSchema(ValoraModel):
    metadata: Optional[datetime] = None
    prices: Optional[datetime] = None
    fx: Optional[datetime] = None

    @classmethod
    def from_freshness(cls, freshness: CategoryFreshness) -> "FreshnessSchema":
        return cls(metadata=freshness.metadata, prices=freshness.prices, fx=freshness.fx)


class PanelSnapshot(ValoraModel):
    active_run: Optional[RunSnapshot] = None
    latest_summary: Optional[RunSnapshot] = None
    freshness: FreshnessSchema = Field(default_factory=FreshnessSchema)

    @classmethod
    def from_state(cls, state: PanelState) -> "PanelSnapshot":
        return cls(
            active_run=RunSnapshot.from_run(state.active_run),
            latest_summary=RunSnapshot.from_run(state.latest_summary),
            freshness=FreshnessSchema.from_freshness(state.freshness),
        )


class StartRunResponse(ValoraModel):
    created_new_run: bool
    run: RunSnapshot


class SuccessResponse(ValoraModel):
    success: bool


class ConversionResultSchema(ValoraModel):
    converted_amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    source: str
    pair: Optional[str] = None

    @classmethod
    def from_result(cls, result: ConversionResult) -> "ConversionResultSchema":
        return cls(
            converted_amount=result.converted_amount,
            rate=result.rate,
            source=result.source.value,
            pair=result.pair,
        )


class ConfigState(ValoraModel):
    provider_configured: bool
    base_currency_configured: bool


class ReconciliationSchema(ValoraModel):
    target_base_currency: str
    status: str
    changed_at: datetime
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: Optional[ReconciliationState]) -> Optional["ReconciliationSchema"]:
        if state is None:
            return None
        return cls(
            target_base_currency=state.target_base_currency,
            status=state.status.value,
            changed_at=state.changed_at,
            resolved_at=state.resolved_at,
        )


class BaseCurrencyImpactState(ValoraModel):
    base_currency: Optional[str] = None
    reconciliation: Optional[ReconciliationSchema] = None
