"""Stale-category refresh scheduled job."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from valora_enrichment.models import (
    CATEGORY_ORDER,
    CategoryFreshness,
    EnrichmentCategory,
    EnrichmentScope,
    StartRunResult,
    utc_now,
)
from valora_enrichment.runs import EnrichmentRunManager

logger = logging.getLogger("valora.jobs.freshness_refresh")


def stale_categories(
    freshness: CategoryFreshness,
    max_age: timedelta,
    now: datetime,
) -> List[EnrichmentCategory]:
    """Categories never refreshed, or last refreshed more than ``max_age`` ago."""
    stale = []
    for category in CATEGORY_ORDER:
        refreshed_at = freshness.get(category)
        if refreshed_at is None or now - refreshed_at > max_age:
            stale.append(category)
    return stale


async def refresh_stale_categories(
    manager: EnrichmentRunManager,
    max_age: timedelta,
    clock: Callable[[], datetime] = utc_now,
) -> Optional[StartRunResult]:
    """
    Start (or join) a run covering every stale category.

    Runs on an interval. Returns None when everything is fresh.
    """
    panel = await manager.get_panel_state()
    if panel.active_run is not None:
        logger.debug("Run %s already active; skipping freshness check", panel.active_run.id)
        return None

    stale = stale_categories(panel.freshness, max_age, clock())
    if not stale:
        logger.debug("All enrichment categories are fresh")
        return None

    logger.info("Refreshing stale categories: %s", ", ".join(c.value for c in stale))
    return await manager.start_run(EnrichmentScope.of(*stale))
