"""Background job scheduler for periodic freshness checks (APScheduler)."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger("valora.scheduler")

JobCallable = Callable[[], Awaitable[object] | object]


class EnrichmentScheduler:
    """Thin wrapper over AsyncIOScheduler with one-instance, coalescing jobs."""

    def __init__(self, timezone: str = "UTC") -> None:
        self._started = False
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60 * 5,
            },
            timezone=timezone,
        )

    @property
    def running(self) -> bool:
        return self._started

    def add_interval_job(
        self,
        func: JobCallable,
        job_id: str,
        *,
        seconds: int,
        **kwargs: Any,
    ) -> None:
        """Register (or replace) an interval job."""
        self._scheduler.add_job(
            func,
            "interval",
            id=job_id,
            seconds=seconds,
            replace_existing=True,
            **kwargs,
        )
        logger.info("Registered interval job: %s (every %ss)", job_id, seconds)

    def has_job(self, job_id: str) -> bool:
        return self._scheduler.get_job(job_id) is not None

    def remove_job(self, job_id: str) -> None:
        if self.has_job(job_id):
            self._scheduler.remove_job(job_id)

    def start(self) -> None:
        """Start the scheduler; must be called with a running event loop."""
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started")

    def shutdown(self) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Scheduler stopped")
