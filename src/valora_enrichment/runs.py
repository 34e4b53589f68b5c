"""
Enrichment run orchestration.

EnrichmentRunManager owns the single "active run" slot. A start request
while a run is active joins it instead of racing it; the slot is claimed
before the first suspension point, so two callers can never both create a
run. Each run drives the selected category fetchers in a background task,
checks its cancellation token between items, and always reaches a terminal
status:

    canceled               cancellation was requested
    completed_with_issues  at least one item failed
    completed              every item succeeded (or nothing was in scope)

A completed run that had FX in scope resolves any pending base-currency
reconciliation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from .cancellation import CancellationToken
from .constants import ENUMERATION_FAILURE_IDENTIFIER
from .exceptions import StorageUnavailableError, failure_reason
from .fetchers import CategoryFetcher, ItemFailure
from .logging_config import run_context
from .models import (
    EnrichmentCategory,
    EnrichmentRun,
    EnrichmentScope,
    PanelState,
    RunStatus,
    StartRunResult,
    utc_now,
)
from .panel import PanelStateProjector
from .reconciliation import ReconciliationTracker
from .storage import AppSettings

logger = logging.getLogger("valora.runs")

NO_OUTCOME_REASON = "No outcome reported by fetcher"


@dataclass
class _ActiveRun:
    run: EnrichmentRun
    token: CancellationToken = field(default_factory=CancellationToken)
    plans: Dict[EnrichmentCategory, List[str]] = field(default_factory=dict)


class EnrichmentRunManager:
    """Orchestrates at most one running enrichment run at a time."""

    def __init__(
        self,
        fetchers: Mapping[EnrichmentCategory, CategoryFetcher],
        tracker: ReconciliationTracker,
        app_settings: AppSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._fetchers = dict(fetchers)
        self._tracker = tracker
        self._app_settings = app_settings
        self._clock = clock

        self._active: Optional[_ActiveRun] = None
        self._runs: Dict[str, EnrichmentRun] = {}
        self._latest_terminal_id: Optional[str] = None
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._backgrounded: set[str] = set()
        self._projector = PanelStateProjector(self, app_settings)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_run(self, scope: EnrichmentScope) -> StartRunResult:
        """Join the running run, or create one for ``scope`` and start it."""
        if self._active is not None:
            logger.info("Run %s already active; joining", self._active.run.id)
            return StartRunResult(created_new_run=False, run=self._active.run.snapshot())

        active = _ActiveRun(run=EnrichmentRun(scope=scope, started_at=self._clock()))
        self._active = active
        run = active.run
        self._runs[run.id] = run
        logger.info("Started enrichment run %s", run.id, extra={"scope": scope.to_dict()})

        if scope.is_empty:
            await self._finalize(active)
            return StartRunResult(created_new_run=True, run=run.snapshot())

        try:
            with run_context(run.id):
                for category in scope.categories:
                    run.set_total(category, 0)
                for category in scope.categories:
                    active.plans[category] = await self._enumerate(run, category)
        except BaseException:
            logger.warning("Run %s interrupted while enumerating work", run.id)
            active.token.cancel("start interrupted")
            await self._finalize(active)
            raise

        task = asyncio.create_task(self._execute(active), name=f"enrichment-run-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(self._on_task_done)
        return StartRunResult(created_new_run=True, run=run.snapshot())

    def cancel_run(self, run_id: str) -> bool:
        """Request cooperative cancellation; takes effect between items."""
        active = self._active
        if active is None or active.run.id != run_id:
            logger.debug("Cancel ignored: run %s is not running", run_id)
            return False
        if active.token.cancel():
            logger.info("Cancellation requested for run %s", run_id)
        return True

    def send_to_background(self, run_id: str) -> bool:
        """Record that the caller stopped watching ``run_id``; execution is unaffected."""
        if run_id not in self._runs:
            return False
        self._backgrounded.add(run_id)
        logger.info("Run %s continues in background", run_id)
        return True

    def is_backgrounded(self, run_id: str) -> bool:
        return run_id in self._backgrounded

    async def wait_for_run(self, run_id: str) -> Optional[EnrichmentRun]:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        return self.get_run_summary(run_id)

    async def shutdown(self) -> None:
        active = self._active
        if active is None:
            return
        active.token.cancel("runtime shutting down")
        await self.wait_for_run(active.run.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run_summary(self, run_id: str) -> Optional[EnrichmentRun]:
        run = self._runs.get(run_id)
        return run.snapshot() if run else None

    def get_active_run(self) -> Optional[EnrichmentRun]:
        return self._active.run.snapshot() if self._active else None

    def get_latest_summary(self) -> Optional[EnrichmentRun]:
        if self._latest_terminal_id is None:
            return None
        return self._runs[self._latest_terminal_id].snapshot()

    async def get_panel_state(self) -> PanelState:
        return await self._projector.get_panel_state()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _enumerate(self, run: EnrichmentRun, category: EnrichmentCategory) -> List[str]:
        fetcher = self._fetchers.get(category)
        try:
            if fetcher is None:
                raise LookupError(f"No fetcher registered for {category.value}")
            identifiers = list(dict.fromkeys(await fetcher.known_identifiers()))
        except Exception as e:
            reason = failure_reason(e)
            logger.warning("Could not enumerate %s work: %s", category.value, reason)
            run.set_total(category, 1)
            run.record_failure(category, ENUMERATION_FAILURE_IDENTIFIER, reason)
            return []

        run.set_total(category, len(identifiers))
        return identifiers

    async def _execute(self, active: _ActiveRun) -> None:
        run = active.run
        try:
            with run_context(run.id):
                for category, identifiers in active.plans.items():
                    if active.token.cancelled:
                        break
                    if not identifiers:
                        continue
                    with run_context(run.id, category.value):
                        await self._drive_category(active, category, identifiers)
        except asyncio.CancelledError:
            active.token.cancel("run task cancelled")
            raise
        except Exception as e:
            logger.exception("Run %s aborted unexpectedly", run.id)
            reason = failure_reason(e)
            for category, identifiers in active.plans.items():
                self._fail_remaining(run, category, identifiers, reason)
        finally:
            await self._finalize(active)

    async def _drive_category(
        self,
        active: _ActiveRun,
        category: EnrichmentCategory,
        identifiers: List[str],
    ) -> None:
        run = active.run
        progress = run.category_progress[category]
        outcomes = self._fetchers[category].fetch(identifiers, active.token)
        try:
            async for outcome in outcomes:
                if progress.processed >= progress.total:
                    logger.warning(
                        "Fetcher for %s yielded more outcomes than its %d items; ignoring the rest",
                        category.value,
                        progress.total,
                    )
                    break
                if isinstance(outcome, ItemFailure):
                    run.record_failure(category, outcome.identifier, outcome.reason)
                else:
                    run.record_success(category)
                if active.token.cancelled:
                    break
            if not active.token.cancelled and progress.processed < progress.total:
                logger.warning(
                    "Fetcher for %s stopped after %d of %d items",
                    category.value,
                    progress.processed,
                    progress.total,
                )
                self._fail_remaining(run, category, identifiers, NO_OUTCOME_REASON)
        except Exception as e:
            reason = failure_reason(e)
            logger.error("Fetcher for %s failed mid-run: %s", category.value, reason)
            self._fail_remaining(run, category, identifiers, reason)
        finally:
            aclose = getattr(outcomes, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _fail_remaining(
        run: EnrichmentRun,
        category: EnrichmentCategory,
        identifiers: List[str],
        reason: str,
    ) -> None:
        progress = run.category_progress[category]
        for identifier in identifiers[progress.processed:progress.total]:
            run.record_failure(category, identifier, reason)

    def _resolve_status(self, active: _ActiveRun) -> RunStatus:
        if active.token.cancelled:
            return RunStatus.CANCELED
        if active.run.failed_items:
            return RunStatus.COMPLETED_WITH_ISSUES
        return RunStatus.COMPLETED

    async def _finalize(self, active: _ActiveRun) -> None:
        run = active.run
        status = self._resolve_status(active)
        ended_at = self._clock()
        try:
            clean = [c for c in active.plans if run.is_clean(c)]
            try:
                await self._app_settings.stamp_category_freshness(clean, ended_at)
            except StorageUnavailableError as e:
                logger.warning("Could not record freshness for run %s: %s", run.id, e.message)

            if run.scope.fx_rates and status is RunStatus.COMPLETED:
                try:
                    await self._tracker.resolve_if_pending()
                except StorageUnavailableError:
                    logger.error(
                        "Run %s completed but reconciliation stays pending",
                        run.id,
                        exc_info=True,
                    )
        finally:
            run.finish(status, ended_at)
            self._latest_terminal_id = run.id
            if self._active is active:
                self._active = None
            logger.info(
                "Run %s finished: %s",
                run.id,
                status.value,
                extra={"failed_items": len(run.failed_items)},
            )

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        for run_id, tracked in list(self._tasks.items()):
            if tracked is task:
                del self._tasks[run_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Enrichment run task crashed", exc_info=error)
