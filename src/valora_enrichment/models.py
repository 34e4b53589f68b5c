"""
Domain models for enrichment runs, FX observations and reconciliation.

Runs are mutated only by EnrichmentRunManager while running and are frozen
once they reach a terminal status. FX observations are append-only.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
import uuid

from .constants import CURRENCY_CODE_PATTERN
from .exceptions import ProgressOverflowError, RunStateError, ValoraValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EnrichmentCategory(str, Enum):
    """Independently-progressed units of enrichment work."""
    SECURITY_METADATA = "securityMetadata"
    SECURITY_PRICES = "securityPrices"
    FX_RATES = "fxRates"

    @property
    def freshness_key(self) -> str:
        return _FRESHNESS_KEYS[self]


_FRESHNESS_KEYS = {
    EnrichmentCategory.SECURITY_METADATA: "metadata",
    EnrichmentCategory.SECURITY_PRICES: "prices",
    EnrichmentCategory.FX_RATES: "fx",
}

# Canonical execution order
CATEGORY_ORDER: tuple[EnrichmentCategory, ...] = (
    EnrichmentCategory.SECURITY_METADATA,
    EnrichmentCategory.SECURITY_PRICES,
    EnrichmentCategory.FX_RATES,
)


class RunStatus(str, Enum):
    """Run lifecycle.

        RUNNING -> COMPLETED | COMPLETED_WITH_ISSUES | CANCELED
    """
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ISSUES = "completed_with_issues"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class ConversionSource(str, Enum):
    SAME_CURRENCY = "same_currency"
    AS_OF = "as_of"
    LATEST_FALLBACK = "latest_fallback"
    UNAVAILABLE = "unavailable"


class ReconciliationStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


# =============================================================================
# Runs
# =============================================================================

@dataclass(frozen=True)
class EnrichmentScope:
    """Which categories a run is asked to refresh."""
    security_metadata: bool = False
    security_prices: bool = False
    fx_rates: bool = False

    @classmethod
    def of(cls, *categories: EnrichmentCategory) -> "EnrichmentScope":
        selected = set(categories)
        return cls(
            security_metadata=EnrichmentCategory.SECURITY_METADATA in selected,
            security_prices=EnrichmentCategory.SECURITY_PRICES in selected,
            fx_rates=EnrichmentCategory.FX_RATES in selected,
        )

    @classmethod
    def all(cls) -> "EnrichmentScope":
        return cls(security_metadata=True, security_prices=True, fx_rates=True)

    def includes(self, category: EnrichmentCategory) -> bool:
        return {
            EnrichmentCategory.SECURITY_METADATA: self.security_metadata,
            EnrichmentCategory.SECURITY_PRICES: self.security_prices,
            EnrichmentCategory.FX_RATES: self.fx_rates,
        }[category]

    @property
    def categories(self) -> List[EnrichmentCategory]:
        return [c for c in CATEGORY_ORDER if self.includes(c)]

    @property
    def is_empty(self) -> bool:
        return not self.categories

    def to_dict(self) -> Dict[str, bool]:
        return {c.value: self.includes(c) for c in CATEGORY_ORDER}


@dataclass
class CategoryProgress:
    """Processed/total counter; processed never decreases or passes total."""
    total: int = 0
    processed: int = 0

    def advance(self) -> None:
        if self.processed >= self.total:
            raise ProgressOverflowError(
                f"progress already at total ({self.processed}/{self.total})"
            )
        self.processed += 1

    @property
    def is_complete(self) -> bool:
        return self.processed == self.total

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "total": self.total}


@dataclass(frozen=True)
class FailedItem:
    category: EnrichmentCategory
    identifier: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "category": self.category.value,
            "identifier": self.identifier,
            "reason": self.reason,
        }

    def to_line(self) -> str:
        return f"{self.category.value}\t{self.identifier}\t{self.reason}"


@dataclass
class EnrichmentRun:
    """A single enrichment run and its progress bookkeeping."""
    scope: EnrichmentScope
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: RunStatus = RunStatus.RUNNING
    category_progress: Dict[EnrichmentCategory, CategoryProgress] = field(default_factory=dict)
    failed_items: List[FailedItem] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None

    def _require_running(self) -> None:
        if self.status.is_terminal:
            raise RunStateError(f"run {self.id} is {self.status.value}; terminal runs are immutable")

    def set_total(self, category: EnrichmentCategory, total: int) -> None:
        self._require_running()
        progress = self.category_progress.setdefault(category, CategoryProgress())
        if progress.processed > total:
            raise ProgressOverflowError(
                f"{category.value}: total {total} below processed {progress.processed}"
            )
        progress.total = total

    def record_success(self, category: EnrichmentCategory) -> None:
        self._require_running()
        self.category_progress[category].advance()

    def record_failure(self, category: EnrichmentCategory, identifier: str, reason: str) -> None:
        self._require_running()
        self.category_progress[category].advance()
        self.failed_items.append(FailedItem(category, identifier, reason))

    def finish(self, status: RunStatus, ended_at: Optional[datetime] = None) -> None:
        self._require_running()
        if not status.is_terminal:
            raise RunStateError("a run can only finish with a terminal status")
        self.status = status
        self.ended_at = ended_at or utc_now()

    def failures_for(self, category: EnrichmentCategory) -> List[FailedItem]:
        return [item for item in self.failed_items if item.category is category]

    def is_clean(self, category: EnrichmentCategory) -> bool:
        """Category was selected, fully processed and had no failures."""
        progress = self.category_progress.get(category)
        return (
            self.scope.includes(category)
            and progress is not None
            and progress.is_complete
            and not self.failures_for(category)
        )

    def snapshot(self) -> "EnrichmentRun":
        """Detached copy safe to hand to pollers."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "scope": self.scope.to_dict(),
            "categoryProgress": {
                category.value: progress.to_dict()
                for category, progress in self.category_progress.items()
            },
            "failedItems": [item.to_dict() for item in self.failed_items],
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass(frozen=True)
class StartRunResult:
    created_new_run: bool
    run: EnrichmentRun


# =============================================================================
# FX
# =============================================================================

def validate_currency_code(code: str, field_name: str = "currency") -> str:
    if not isinstance(code, str) or not CURRENCY_CODE_PATTERN.match(code):
        raise ValoraValidationError(f"Invalid currency code: {code!r}", field=field_name)
    return code


def parse_market_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValoraValidationError(f"Invalid date: {value!r}", field="date") from e


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def pair_key(source_currency: str, target_currency: str) -> str:
    return f"{source_currency}->{target_currency}"


@dataclass(frozen=True)
class FxObservation:
    """One persisted exchange-rate observation.

    ``sequence`` is the store's insertion order; it is assigned by the store
    and only used to break same-date ties.
    """
    source_currency: str
    target_currency: str
    date: date
    rate: Decimal
    sequence: int = 0

    def __post_init__(self) -> None:
        validate_currency_code(self.source_currency, "source_currency")
        validate_currency_code(self.target_currency, "target_currency")
        if self.source_currency == self.target_currency:
            raise ValoraValidationError("FX observation must span two currencies")
        if self.rate <= 0:
            raise ValoraValidationError("FX rate must be positive", field="rate")

    def inverse(self) -> "FxObservation":
        return FxObservation(
            source_currency=self.target_currency,
            target_currency=self.source_currency,
            date=self.date,
            rate=Decimal(1) / self.rate,
            sequence=self.sequence,
        )


@dataclass(frozen=True)
class ConversionResult:
    converted_amount: Optional[Decimal]
    rate: Optional[Decimal]
    source: ConversionSource
    pair: Optional[str]
    rate_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "convertedAmount": self.converted_amount,
            "rate": self.rate,
            "source": self.source.value,
            "pair": self.pair,
        }


# =============================================================================
# Reconciliation
# =============================================================================

@dataclass(frozen=True)
class ReconciliationState:
    target_base_currency: str
    status: ReconciliationStatus
    changed_at: datetime
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "targetBaseCurrency": self.target_base_currency,
            "status": self.status.value,
            "changedAt": self.changed_at.isoformat(),
        }
        if self.resolved_at is not None:
            data["resolvedAt"] = self.resolved_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, value: Any) -> Optional["ReconciliationState"]:
        """Parse a stored record; anything malformed reads back as None."""
        if not isinstance(value, Mapping):
            return None

        target = value.get("targetBaseCurrency")
        if not isinstance(target, str) or not CURRENCY_CODE_PATTERN.match(target):
            return None

        try:
            status = ReconciliationStatus(value.get("status"))
        except ValueError:
            return None

        changed_at = _parse_timestamp(value.get("changedAt"))
        if changed_at is None:
            return None

        raw_resolved = value.get("resolvedAt")
        resolved_at = _parse_timestamp(raw_resolved)
        if raw_resolved is not None and resolved_at is None:
            return None

        return cls(
            target_base_currency=target,
            status=status,
            changed_at=changed_at,
            resolved_at=resolved_at,
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Panel
# =============================================================================

@dataclass(frozen=True)
class CategoryFreshness:
    metadata: Optional[datetime] = None
    prices: Optional[datetime] = None
    fx: Optional[datetime] = None

    def get(self, category: EnrichmentCategory) -> Optional[datetime]:
        return getattr(self, category.freshness_key)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            key: (value.isoformat() if value else None)
            for key, value in (("metadata", self.metadata), ("prices", self.prices), ("fx", self.fx))
        }

    @classmethod
    def from_dict(cls, value: Any) -> "CategoryFreshness":
        if not isinstance(value, Mapping):
            return cls()
        return cls(
            metadata=_parse_timestamp(value.get("metadata")),
            prices=_parse_timestamp(value.get("prices")),
            fx=_parse_timestamp(value.get("fx")),
        )


@dataclass(frozen=True)
class PanelState:
    active_run: Optional[EnrichmentRun]
    latest_summary: Optional[EnrichmentRun]
    freshness: CategoryFreshness

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activeRun": self.active_run.to_dict() if self.active_run else None,
            "latestSummary": self.latest_summary.to_dict() if self.latest_summary else None,
            "freshness": self.freshness.to_dict(),
        }
