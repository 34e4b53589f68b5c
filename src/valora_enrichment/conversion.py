"""
Point-in-time currency conversion against the persisted FX history.

Resolution policy for ``convert_amount(amount, source, target, as_of)``:

1. Same currency: the amount itself at rate 1.
2. As-of: the latest observation for the pair dated on or before ``as_of``.
3. Latest fallback: the latest observation for the pair regardless of date.
4. Unavailable: no observation for the pair at all.

Every stored observation (A, B) also stands for the inverse pair (B, A) at
1 / rate on the same date. When several candidates share the winning date
the most recently inserted observation wins.

The resolver has no dependency on run state; it only reads the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .models import (
    ConversionResult,
    ConversionSource,
    FxObservation,
    pair_key,
    parse_market_date,
    to_decimal,
    validate_currency_code,
)
from .repository import FxKey, FxObservationStore

logger = logging.getLogger("valora.conversion")


@dataclass(frozen=True)
class _Candidate:
    date: date
    sequence: int
    rate: Decimal

    def beats(self, other: Optional["_Candidate"]) -> bool:
        if other is None:
            return True
        return (self.date, self.sequence) > (other.date, other.sequence)


def _candidates_for_pair(
    observations: Iterable[FxObservation],
    source_currency: str,
    target_currency: str,
) -> List[_Candidate]:
    found: List[_Candidate] = []
    for observation in observations:
        if (observation.source_currency, observation.target_currency) == (source_currency, target_currency):
            found.append(_Candidate(observation.date, observation.sequence, observation.rate))
        elif (observation.target_currency, observation.source_currency) == (source_currency, target_currency):
            inverse = observation.inverse()
            found.append(_Candidate(inverse.date, inverse.sequence, inverse.rate))
    return found


class ConversionResolver:
    """Pure query service answering "X of A in B as of D"."""

    def __init__(self, store: FxObservationStore) -> None:
        self._store = store

    async def convert_amount(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
        as_of_date: date | str,
    ) -> ConversionResult:
        value = to_decimal(amount)
        as_of = parse_market_date(as_of_date)

        if source_currency == target_currency:
            return ConversionResult(
                converted_amount=value,
                rate=Decimal(1),
                source=ConversionSource.SAME_CURRENCY,
                pair=None,
            )

        validate_currency_code(source_currency, "source_currency")
        validate_currency_code(target_currency, "target_currency")
        pair = pair_key(source_currency, target_currency)

        observations = await self._store.list_fx_observations(
            currencies=(source_currency, target_currency)
        )

        as_of_best: Optional[_Candidate] = None
        latest_best: Optional[_Candidate] = None
        for candidate in _candidates_for_pair(observations, source_currency, target_currency):
            if candidate.beats(latest_best):
                latest_best = candidate
            if candidate.date <= as_of and candidate.beats(as_of_best):
                as_of_best = candidate

        if as_of_best is not None:
            return ConversionResult(
                converted_amount=value * as_of_best.rate,
                rate=as_of_best.rate,
                source=ConversionSource.AS_OF,
                pair=pair,
                rate_date=as_of_best.date,
            )

        if latest_best is not None:
            logger.debug("No %s rate on or before %s; using latest %s", pair, as_of, latest_best.date)
            return ConversionResult(
                converted_amount=value * latest_best.rate,
                rate=latest_best.rate,
                source=ConversionSource.LATEST_FALLBACK,
                pair=pair,
                rate_date=latest_best.date,
            )

        return ConversionResult(
            converted_amount=None,
            rate=None,
            source=ConversionSource.UNAVAILABLE,
            pair=pair,
        )


def derive_required_fx_pairs(
    source_currencies: Iterable[str],
    base_currency: str,
) -> List[FxKey]:
    """One (currency -> base) pair per distinct non-base currency, first-seen order."""
    pairs: List[FxKey] = []
    seen: Dict[str, None] = {}
    for currency in source_currencies:
        if not currency or currency == base_currency or currency in seen:
            continue
        seen[currency] = None
        pairs.append(FxKey(source_currency=currency, target_currency=base_currency))
    return pairs


def resolve_fx_rate_for_valuation(
    source_currency: str,
    base_currency: str,
    rate: Optional[Decimal],
) -> Optional[Decimal]:
    """Rate 1 for same-currency valuations, otherwise whatever rate was found."""
    if source_currency == base_currency:
        return Decimal(1)
    return rate
