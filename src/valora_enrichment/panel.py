"""Read-only snapshot for polling consumers such as the status panel."""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from .models import EnrichmentRun, FailedItem, PanelState
from .storage import AppSettings

if TYPE_CHECKING:
    from .runs import EnrichmentRunManager


EXPORT_HEADER = "category\tidentifier\treason"


class PanelStateProjector:
    """Assembles {activeRun, latestSummary, freshness}.

    Freshness for a category is the end time of the most recent run in which
    it was selected, fully processed and had no failures. The manager stamps
    it into the settings store when a run finishes, so it survives restarts.
    """

    def __init__(self, manager: "EnrichmentRunManager", app_settings: AppSettings) -> None:
        self._manager = manager
        self._app_settings = app_settings

    async def get_panel_state(self) -> PanelState:
        return PanelState(
            active_run=self._manager.get_active_run(),
            latest_summary=self._manager.get_latest_summary(),
            freshness=await self._app_settings.get_category_freshness(),
        )


def export_failed_items(run: Optional[EnrichmentRun]) -> str:
    """Tab-separated text of a run's failed items, one per line, with a header."""
    items: Iterable[FailedItem] = run.failed_items if run else ()
    lines = [EXPORT_HEADER]
    lines.extend(_sanitize(item).to_line() for item in items)
    return "\n".join(lines) + "\n"


def _sanitize(item: FailedItem) -> FailedItem:
    def clean(value: str) -> str:
        return " ".join(value.replace("\t", " ").split())

    return FailedItem(item.category, clean(item.identifier), clean(item.reason))
