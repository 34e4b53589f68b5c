"""Tests for enrichment run orchestration."""
from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from valora_enrichment.constants import ENUMERATION_FAILURE_IDENTIFIER
from valora_enrichment.exceptions import StorageUnavailableError
from valora_enrichment.fetchers import ItemFailure, ItemSuccess
from valora_enrichment.models import (
    EnrichmentCategory,
    EnrichmentScope,
    ReconciliationStatus,
    RunStatus,
)
from valora_enrichment.repository import FxKey, SecurityKey
from valora_enrichment.runs import EnrichmentRunManager

METADATA = EnrichmentCategory.SECURITY_METADATA
PRICES = EnrichmentCategory.SECURITY_PRICES
FX = EnrichmentCategory.FX_RATES


class ScriptedFetcher:
    """Category fetcher driven by a fixed script, for orchestration tests."""

    def __init__(self, category, identifiers, failures=None, gate_first=False, extra_outcomes=0, crash_after=None, stop_after=None):
        self.category = category
        self.identifiers = list(identifiers)
        self.failures = failures or {}
        self.gate_first = gate_first
        self.extra_outcomes = extra_outcomes
        self.crash_after = crash_after
        self.stop_after = stop_after
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.on_item = None
        self.fetched = []

    async def known_identifiers(self):
        return list(self.identifiers)

    async def fetch(self, identifiers, token):
        for index, identifier in enumerate(identifiers):
            if token.cancelled:
                return
            if self.stop_after is not None and index >= self.stop_after:
                return
            if self.crash_after is not None and index >= self.crash_after:
                raise RuntimeError("fetcher exploded")
            if self.on_item is not None:
                self.on_item()
            if self.gate_first and index == 0:
                self.started.set()
                await self.release.wait()
            self.fetched.append(identifier)
            if identifier in self.failures:
                yield ItemFailure(identifier, self.failures[identifier])
            else:
                yield ItemSuccess(identifier)
        for _ in range(self.extra_outcomes):
            yield ItemSuccess("extra")


class SlowEnumerationFetcher:
    category = METADATA

    def __init__(self):
        self.ready = asyncio.Event()

    async def known_identifiers(self):
        await self.ready.wait()
        return ["A/X"]

    async def fetch(self, identifiers, token):
        for identifier in identifiers:
            yield ItemSuccess(identifier)


class BrokenEnumerationFetcher:
    category = PRICES

    async def known_identifiers(self):
        raise StorageUnavailableError("ledger offline", operation="ledger.read")

    async def fetch(self, identifiers, token):
        for identifier in identifiers:
            yield ItemSuccess(identifier)


def _manager(fetchers, tracker, app_settings, clock):
    return EnrichmentRunManager(
        {fetcher.category: fetcher for fetcher in fetchers},
        tracker,
        app_settings,
        clock=clock,
    )


async def _run_to_end(manager, scope):
    result = await manager.start_run(scope)
    return await manager.wait_for_run(result.run.id)


# ---------------------------------------------------------------------------
# start / join
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_empty_scope_completes_immediately(manager):
    result = await manager.start_run(EnrichmentScope())

    assert result.created_new_run
    assert result.run.status is RunStatus.COMPLETED
    assert result.run.category_progress == {}
    assert result.run.ended_at is not None
    assert manager.get_active_run() is None
    assert manager.get_latest_summary().id == result.run.id


@pytest.mark.asyncio
async def test_progress_initialized_for_selected_categories_only(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(PRICES, ["A/X", "B/X", "C/X"], gate_first=True)
    manager = _manager([fetcher], tracker, app_settings, clock)

    result = await manager.start_run(EnrichmentScope.of(PRICES))

    assert set(result.run.category_progress) == {PRICES}
    assert result.run.category_progress[PRICES].total == 3
    assert result.run.category_progress[PRICES].processed == 0
    fetcher.release.set()
    await manager.wait_for_run(result.run.id)


@pytest.mark.asyncio
async def test_start_while_running_joins(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(METADATA, ["A/X", "B/X"], gate_first=True)
    manager = _manager([fetcher], tracker, app_settings, clock)

    first = await manager.start_run(EnrichmentScope.of(METADATA))
    await fetcher.started.wait()
    second = await manager.start_run(EnrichmentScope.all())

    assert first.created_new_run
    assert not second.created_new_run
    assert second.run.id == first.run.id
    assert second.run.scope == EnrichmentScope.of(METADATA)

    fetcher.release.set()
    await manager.wait_for_run(first.run.id)


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_run(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(METADATA, ["A/X"], gate_first=True)
    manager = _manager([fetcher], tracker, app_settings, clock)

    results = await asyncio.gather(
        *(manager.start_run(EnrichmentScope.of(METADATA)) for _ in range(5))
    )

    assert sum(r.created_new_run for r in results) == 1
    assert len({r.run.id for r in results}) == 1

    fetcher.release.set()
    await manager.wait_for_run(results[0].run.id)


@pytest.mark.asyncio
async def test_new_run_after_previous_finished(tracker, app_settings, clock):
    manager = _manager([ScriptedFetcher(METADATA, ["A/X"])], tracker, app_settings, clock)

    first = await _run_to_end(manager, EnrichmentScope.of(METADATA))
    second = await manager.start_run(EnrichmentScope.of(METADATA))

    assert second.created_new_run
    assert second.run.id != first.id
    await manager.wait_for_run(second.run.id)


# ---------------------------------------------------------------------------
# progress and failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_all_success_completes(tracker, app_settings, clock):
    manager = _manager(
        [ScriptedFetcher(METADATA, ["A/X", "B/X"]), ScriptedFetcher(FX, ["CAD/USD"])],
        tracker,
        app_settings,
        clock,
    )

    run = await _run_to_end(manager, EnrichmentScope.of(METADATA, FX))

    assert run.status is RunStatus.COMPLETED
    assert run.category_progress[METADATA].processed == 2
    assert run.category_progress[FX].processed == 1
    assert run.failed_items == []
    assert run.ended_at >= run.started_at


@pytest.mark.asyncio
async def test_failures_are_recorded_and_run_continues(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(PRICES, ["A/X", "B/X", "C/X"], failures={"B/X": "HTTP 404"})
    manager = _manager([fetcher], tracker, app_settings, clock)

    run = await _run_to_end(manager, EnrichmentScope.of(PRICES))

    assert run.status is RunStatus.COMPLETED_WITH_ISSUES
    assert run.category_progress[PRICES].processed == 3
    assert [(i.category, i.identifier, i.reason) for i in run.failed_items] == [
        (PRICES, "B/X", "HTTP 404"),
    ]
    assert fetcher.fetched == ["A/X", "B/X", "C/X"]


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_bounded(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(PRICES, [f"T{i}/X" for i in range(6)], failures={"T2/X": "bad"})
    manager = _manager([fetcher], tracker, app_settings, clock)
    seen = []

    def observe():
        progress = manager.get_active_run().category_progress[PRICES]
        seen.append((progress.processed, progress.total))

    fetcher.on_item = observe
    run = await _run_to_end(manager, EnrichmentScope.of(PRICES))

    processed = [p for p, _ in seen] + [run.category_progress[PRICES].processed]
    assert processed == sorted(processed)
    assert all(p <= total for p, total in seen)
    assert processed[-1] == 6


@pytest.mark.asyncio
async def test_extra_outcomes_never_exceed_total(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(METADATA, ["A/X", "B/X"], extra_outcomes=3)
    manager = _manager([fetcher], tracker, app_settings, clock)

    run = await _run_to_end(manager, EnrichmentScope.of(METADATA))

    assert run.category_progress[METADATA].processed == 2
    assert run.category_progress[METADATA].total == 2
    assert run.status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_fetcher_crash_fails_remaining_items(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(PRICES, ["A/X", "B/X", "C/X"], crash_after=1)
    manager = _manager([fetcher], tracker, app_settings, clock)

    run = await _run_to_end(manager, EnrichmentScope.of(PRICES))

    assert run.status is RunStatus.COMPLETED_WITH_ISSUES
    assert run.category_progress[PRICES].processed == 3
    assert [i.identifier for i in run.failed_items] == ["B/X", "C/X"]
    assert {i.reason for i in run.failed_items} == {"fetcher exploded"}


@pytest.mark.asyncio
async def test_fetcher_ending_early_fails_unreported_items(tracker, app_settings, clock):
    await tracker.set_base_currency("CAD")
    fetcher = ScriptedFetcher(FX, ["USD/CAD", "EUR/CAD"], stop_after=1)
    manager = _manager([fetcher], tracker, app_settings, clock)

    run = await _run_to_end(manager, EnrichmentScope.of(FX))

    assert run.status is RunStatus.COMPLETED_WITH_ISSUES
    assert run.category_progress[FX].processed == run.category_progress[FX].total == 2
    assert [(i.identifier, i.reason) for i in run.failed_items] == [
        ("EUR/CAD", "No outcome reported by fetcher"),
    ]
    assert (await tracker.get_state()).status is ReconciliationStatus.PENDING

@pytest.mark.asyncio
async def test_enumeration_failure_becomes_failed_item(tracker, app_settings, clock):
    manager = _manager(
        [BrokenEnumerationFetcher(), ScriptedFetcher(METADATA, ["A/X"])],
        tracker,
        app_settings,
        clock,
    )

    run = await _run_to_end(manager, EnrichmentScope.of(METADATA, PRICES))

    assert run.status is RunStatus.COMPLETED_WITH_ISSUES
    assert run.category_progress[PRICES].processed == run.category_progress[PRICES].total == 1
    assert run.failed_items[0].identifier == ENUMERATION_FAILURE_IDENTIFIER
    assert run.failed_items[0].reason == "ledger offline"
    assert run.category_progress[METADATA].processed == 1


@pytest.mark.asyncio
async def test_missing_fetcher_becomes_failed_item(tracker, app_settings, clock):
    manager = _manager([ScriptedFetcher(METADATA, ["A/X"])], tracker, app_settings, clock)

    run = await _run_to_end(manager, EnrichmentScope.of(FX))

    assert run.status is RunStatus.COMPLETED_WITH_ISSUES
    assert run.failed_items[0].category is FX
    assert run.failed_items[0].identifier == ENUMERATION_FAILURE_IDENTIFIER


# ---------------------------------------------------------------------------
# cancellation and backgrounding
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_lets_in_flight_item_finish(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(PRICES, ["A/X", "B/X", "C/X"], gate_first=True)
    other = ScriptedFetcher(FX, ["CAD/USD"])
    manager = _manager([fetcher, other], tracker, app_settings, clock)

    result = await manager.start_run(EnrichmentScope.of(PRICES, FX))
    await fetcher.started.wait()
    assert manager.cancel_run(result.run.id)
    fetcher.release.set()
    run = await manager.wait_for_run(result.run.id)

    assert run.status is RunStatus.CANCELED
    assert run.category_progress[PRICES].processed == 1
    assert fetcher.fetched == ["A/X"]
    assert other.fetched == []
    assert manager.get_active_run() is None


@pytest.mark.asyncio
async def test_cancel_still_records_in_flight_failure(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(PRICES, ["A/X", "B/X"], failures={"A/X": "HTTP 500"}, gate_first=True)
    manager = _manager([fetcher], tracker, app_settings, clock)

    result = await manager.start_run(EnrichmentScope.of(PRICES))
    await fetcher.started.wait()
    assert manager.cancel_run(result.run.id)
    fetcher.release.set()
    run = await manager.wait_for_run(result.run.id)

    assert run.status is RunStatus.CANCELED
    assert run.category_progress[PRICES].processed == 1
    assert [(i.identifier, i.reason) for i in run.failed_items] == [("A/X", "HTTP 500")]
    assert fetcher.fetched == ["A/X"]


@pytest.mark.asyncio
async def test_interrupted_start_releases_active_slot(tracker, app_settings, clock):
    fetcher = SlowEnumerationFetcher()
    manager = _manager([fetcher], tracker, app_settings, clock)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(manager.start_run(EnrichmentScope.of(METADATA)), 0.05)

    assert manager.get_active_run() is None
    interrupted = manager.get_latest_summary()
    assert interrupted.status is RunStatus.CANCELED
    assert interrupted.ended_at is not None
    assert (await manager.get_panel_state()).freshness.metadata is None

    fetcher.ready.set()
    second = await manager.start_run(EnrichmentScope.of(METADATA))
    assert second.created_new_run
    assert second.run.id != interrupted.id
    assert (await manager.wait_for_run(second.run.id)).status is RunStatus.COMPLETED

@pytest.mark.asyncio
async def test_cancel_unknown_or_finished_run(tracker, app_settings, clock):
    manager = _manager([ScriptedFetcher(METADATA, ["A/X"])], tracker, app_settings, clock)

    assert not manager.cancel_run("nope")
    run = await _run_to_end(manager, EnrichmentScope.of(METADATA))
    assert not manager.cancel_run(run.id)
    assert manager.get_run_summary(run.id).status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_background_does_not_change_execution(tracker, app_settings, clock):
    fetcher = ScriptedFetcher(METADATA, ["A/X", "B/X"], gate_first=True)
    manager = _manager([fetcher], tracker, app_settings, clock)

    result = await manager.start_run(EnrichmentScope.of(METADATA))
    assert manager.send_to_background(result.run.id)
    assert manager.is_backgrounded(result.run.id)
    fetcher.release.set()
    run = await manager.wait_for_run(result.run.id)

    assert run.status is RunStatus.COMPLETED
    assert not manager.send_to_background("unknown")


@pytest.mark.asyncio
async def test_summaries_are_detached_copies(tracker, app_settings, clock):
    manager = _manager([ScriptedFetcher(METADATA, ["A/X"])], tracker, app_settings, clock)
    run = await _run_to_end(manager, EnrichmentScope.of(METADATA))

    run.failed_items.clear()
    run.category_progress.clear()

    fresh = manager.get_run_summary(run.id)
    assert fresh.category_progress[METADATA].processed == 1
    assert manager.get_run_summary("missing") is None


# ---------------------------------------------------------------------------
# panel freshness
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_freshness_tracks_clean_categories(tracker, app_settings, clock):
    manager = _manager(
        [
            ScriptedFetcher(METADATA, ["A/X"]),
            ScriptedFetcher(PRICES, ["A/X"], failures={"A/X": "boom"}),
        ],
        tracker,
        app_settings,
        clock,
    )

    panel = await manager.get_panel_state()
    assert panel.freshness.metadata is None

    run = await _run_to_end(manager, EnrichmentScope.of(METADATA, PRICES))
    panel = await manager.get_panel_state()

    assert panel.active_run is None
    assert panel.latest_summary.id == run.id
    assert panel.freshness.metadata == run.ended_at
    assert panel.freshness.prices is None
    assert panel.freshness.fx is None


# ---------------------------------------------------------------------------
# reconciliation hook, with the provider-backed fetchers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fx_failure_keeps_reconciliation_pending_until_clean_run(
    manager, tracker, provider, repository, app_settings
):
    await app_settings.write_base_currency("USD")
    await tracker.set_base_currency("CAD")
    assert (await tracker.get_state()).status is ReconciliationStatus.PENDING

    provider.add_rate("USD", "CAD", date(2024, 2, 1), "1.35")
    provider.add_rate("EUR", "CAD", date(2024, 2, 1), "1.46")
    provider.failures["EUR/CAD"] = ValueError("pair not supported")

    run = await _run_to_end(manager, EnrichmentScope.of(FX))

    assert run.status is RunStatus.COMPLETED_WITH_ISSUES
    assert [i.identifier for i in run.failed_items] == ["EUR/CAD"]
    assert run.failed_items[0].reason == "pair not supported"
    assert (await tracker.get_state()).status is ReconciliationStatus.PENDING
    assert await repository.latest_fx_date(FxKey("USD", "CAD")) == date(2024, 2, 1)

    provider.failures.clear()
    run = await _run_to_end(manager, EnrichmentScope.of(FX))

    assert run.status is RunStatus.COMPLETED
    state = await tracker.get_state()
    assert state.status is ReconciliationStatus.RESOLVED
    assert state.resolved_at is not None


@pytest.mark.asyncio
async def test_canceled_fx_run_keeps_reconciliation_pending(tracker, app_settings, clock):
    await tracker.set_base_currency("CAD")
    fetcher = ScriptedFetcher(FX, ["USD/CAD", "EUR/CAD"], gate_first=True)
    manager = _manager([fetcher], tracker, app_settings, clock)

    result = await manager.start_run(EnrichmentScope.of(FX))
    await fetcher.started.wait()
    manager.cancel_run(result.run.id)
    fetcher.release.set()
    run = await manager.wait_for_run(result.run.id)

    assert run.status is RunStatus.CANCELED
    assert run.failed_items == []
    assert (await tracker.get_state()).status is ReconciliationStatus.PENDING


@pytest.mark.asyncio
async def test_run_without_fx_leaves_reconciliation_alone(tracker, app_settings, clock):
    await tracker.set_base_currency("CAD")
    manager = _manager([ScriptedFetcher(METADATA, ["A/X"])], tracker, app_settings, clock)

    run = await _run_to_end(manager, EnrichmentScope.of(METADATA))

    assert run.status is RunStatus.COMPLETED
    assert (await tracker.get_state()).status is ReconciliationStatus.PENDING


@pytest.mark.asyncio
async def test_provider_fetchers_persist_data(manager, provider, repository, app_settings):
    from valora_enrichment.providers import SecurityMetadataSnapshot
    from valora_enrichment.repository import PricePoint

    await app_settings.write_base_currency("USD")
    provider.metadata[("AAPL", "XNAS")] = SecurityMetadataSnapshot(
        "AAPL", "XNAS", display_name="Apple Inc.", quote_currency="USD"
    )
    provider.prices[("AAPL", "XNAS")] = [PricePoint(date(2024, 1, 3), Decimal("184.25"))]

    run = await _run_to_end(manager, EnrichmentScope.all())

    assert run.status is RunStatus.COMPLETED
    assert run.category_progress[METADATA].total == 2
    assert run.category_progress[FX].total == 2
    metadata = await repository.get_security_metadata(SecurityKey("AAPL", "XNAS"))
    assert metadata.display_name == "Apple Inc."
    assert await repository.latest_price_date(SecurityKey("AAPL", "XNAS")) == date(2024, 1, 3)


@pytest.mark.asyncio
async def test_unreadable_reconciliation_keeps_run_terminal(tracker, app_settings, clock, caplog):
    await tracker.set_base_currency("CAD")

    async def unreadable():
        raise StorageUnavailableError("settings offline", operation="settings.read")

    tracker.resolve_if_pending = unreadable
    manager = _manager([ScriptedFetcher(FX, ["USD/CAD"])], tracker, app_settings, clock)

    run = await _run_to_end(manager, EnrichmentScope.of(FX))

    assert run.status is RunStatus.COMPLETED
    assert manager.get_active_run() is None
    assert "reconciliation stays pending" in caplog.text
    assert "task crashed" not in caplog.text


@pytest.mark.asyncio
async def test_finished_run_tasks_are_released(tracker, app_settings, clock):
    manager = _manager([ScriptedFetcher(METADATA, ["A/X"])], tracker, app_settings, clock)

    for _ in range(3):
        await _run_to_end(manager, EnrichmentScope.of(METADATA))

    assert manager._tasks == {}
