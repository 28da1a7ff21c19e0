"""
Periodic feed refresh scheduling.
"""

import asyncio
import math
from typing import Any, Awaitable, Callable, Optional

from shared.logging import get_logger


def period_minutes(update_interval: int) -> int:
    """Whole minutes between refreshes for an interval given in seconds."""
    return max(1, math.ceil(update_interval / 60))


class RefreshScheduler:
    """Fires ``refresh`` every ``period_minutes(update_interval)`` minutes."""

    def __init__(self, refresh: Callable[[], Awaitable[Any]], update_interval: int = 900):
        self.refresh = refresh
        self.period_seconds = period_minutes(update_interval) * 60
        self.logger = get_logger("redirector.scheduler")
        self._task: Optional[asyncio.Task] = None
        self._period_changed: Optional[asyncio.Event] = None
        self.running = False

    async def start(self):
        self.running = True
        self._period_changed = asyncio.Event()
        self._task = asyncio.create_task(self._refresh_loop())
        self.logger.info("Refresh scheduler started", period_seconds=self.period_seconds)

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.logger.info("Refresh scheduler stopped")

    async def reset(self, update_interval: int):
        """Restart the timer if the period changed.

        A refresh already in flight runs to completion; the new period starts
        counting once it returns.
        """
        period_seconds = period_minutes(update_interval) * 60
        if period_seconds == self.period_seconds:
            return
        self.period_seconds = period_seconds
        self.logger.info("Refresh period changed", period_seconds=period_seconds)
        if self.running and self._period_changed is not None:
            self._period_changed.set()

    async def _wait_period(self) -> bool:
        """Sleep one period; returns False when the period changed meanwhile."""
        try:
            await asyncio.wait_for(self._period_changed.wait(), timeout=self.period_seconds)
        except asyncio.TimeoutError:
            pass
        if self._period_changed.is_set():
            self._period_changed.clear()
            return False
        return True

    async def _refresh_loop(self):
        while self.running:
            try:
                if not await self._wait_period():
                    continue
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Scheduled refresh failed", error=str(e))
