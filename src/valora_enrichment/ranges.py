"""Fetch window helpers: incremental start dates and historical gap detection."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class DateWindow:
    start_date: date
    end_date: date


def derive_incremental_start_date(
    earliest_relevant_date: date,
    last_refreshed_date: Optional[date],
) -> date:
    """Resume from the last stored date, or start at the earliest relevant one."""
    return last_refreshed_date or earliest_relevant_date


def detect_historical_gaps(
    required_start: date,
    required_end: date,
    covered_dates: Iterable[date],
) -> List[DateWindow]:
    """Contiguous windows of dates in [required_start, required_end] not covered."""
    covered = set(covered_dates)
    gaps: List[DateWindow] = []
    gap_start: Optional[date] = None
    previous: Optional[date] = None

    cursor = required_start
    while cursor <= required_end:
        if cursor not in covered:
            if gap_start is None:
                gap_start = cursor
            previous = cursor
        elif gap_start is not None:
            gaps.append(DateWindow(gap_start, previous))
            gap_start = None
        cursor += timedelta(days=1)

    if gap_start is not None:
        gaps.append(DateWindow(gap_start, previous))
    return gaps
