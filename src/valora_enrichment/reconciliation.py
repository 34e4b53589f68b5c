"""
Base-currency reconciliation tracking.

Changing the base currency opens a ``pending`` record. Only a completed FX
refresh (zero FX failures) for the currently configured base currency moves
it to ``resolved``. Nothing else clears the record, and re-selecting the
current base currency leaves it untouched.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from .exceptions import ReconciliationWriteError, StorageUnavailableError, UnsupportedCurrencyError
from .models import ReconciliationState, ReconciliationStatus, utc_now
from .storage import AppSettings, is_allowed_base_currency

logger = logging.getLogger("valora.reconciliation")


class ReconciliationTracker:
    """Persisted pending/resolved state machine for base-currency changes."""

    def __init__(
        self,
        settings: AppSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._clock = clock

    async def set_base_currency(self, new_currency: str) -> Optional[ReconciliationState]:
        """Persist a new base currency and open a pending reconciliation.

        Returns the new record, or None when the currency was unchanged.
        Never touches ledger or account data.
        """
        if not is_allowed_base_currency(new_currency):
            raise UnsupportedCurrencyError(new_currency, field="baseCurrency")

        current = await self._settings.get_base_currency()
        if current == new_currency:
            logger.debug("Base currency already %s; reconciliation untouched", new_currency)
            return None

        await self._settings.write_base_currency(new_currency)
        state = ReconciliationState(
            target_base_currency=new_currency,
            status=ReconciliationStatus.PENDING,
            changed_at=self._clock(),
        )
        await self._settings.write_reconciliation_state(state)
        logger.info("Base currency changed %s -> %s; reconciliation pending", current, new_currency)
        return state

    async def resolve_if_pending(self) -> Optional[ReconciliationState]:
        """Mark the pending record resolved if it targets the current base currency.

        Returns the resolved record, or None when there was nothing to resolve.

        Raises:
            ReconciliationWriteError: the resolved record could not be persisted;
                the stored record stays pending.
        """
        state = await self._settings.get_reconciliation_state()
        if state is None or state.status is ReconciliationStatus.RESOLVED:
            return None

        base_currency = await self._settings.get_base_currency()
        if state.target_base_currency != base_currency:
            logger.info(
                "Pending reconciliation targets %s but base currency is %s; leaving pending",
                state.target_base_currency,
                base_currency,
            )
            return None

        resolved = replace(state, status=ReconciliationStatus.RESOLVED, resolved_at=self._clock())
        try:
            await self._settings.write_reconciliation_state(resolved)
        except StorageUnavailableError as e:
            raise ReconciliationWriteError(
                f"Could not persist resolved reconciliation for {state.target_base_currency}: {e.message}",
                operation="reconciliation.resolve",
            ) from e

        logger.info("Reconciliation for base currency %s resolved", resolved.target_base_currency)
        return resolved

    async def get_state(self) -> Optional[ReconciliationState]:
        return await self._settings.get_reconciliation_state()
