"""Cooperative cancellation token threaded through a run's fetch calls."""
from __future__ import annotations

import asyncio
from typing import Optional


class CancellationToken:
    """Set once, checked between units of work; never preempts a fetch."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancellation requested") -> bool:
        """Request cancellation. Returns False if it was already requested."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()
