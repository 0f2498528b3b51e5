"""Periodic sync scheduler - background task that runs reconciliation cycles."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kanbn_sync.sync.orchestrator import CycleReport

logger = logging.getLogger(__name__)

CycleRunner = Callable[[], Awaitable["CycleReport | None"]]


class SyncScheduler:
    """Runs a cycle immediately, then every ``interval`` after the previous one finished.

    The interval is measured from cycle completion, so a slow cycle never
    causes the next one to start early. ``reschedule()`` wakes the sleeping
    loop so a new interval applies to the current wait.
    """

    def __init__(self, run_cycle: CycleRunner) -> None:
        self._run_cycle = run_cycle
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._interval_seconds = 0.0
        self._last_completed: float | None = None
        self.next_run_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval_minutes(self) -> float:
        return self._interval_seconds / 60

    async def start(self, interval_minutes: float) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._interval_seconds = interval_minutes * 60
        self._task = asyncio.create_task(self._loop(), name="kanbn-sync-scheduler")
        logger.info(f"[SYNC] Scheduler started (every {interval_minutes:g} minutes)")

    async def stop(self) -> None:
        """Stop the scheduler loop, cancelling a running cycle."""
        self._running = False
        self.next_run_at = None
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("[SYNC] Scheduler stopped")

    def reschedule(self, interval_minutes: float) -> None:
        """Change the interval; the pending wait is re-evaluated at once."""
        self._interval_seconds = interval_minutes * 60
        if self._last_completed is not None:
            self._update_next_run()
        logger.info(f"[SYNC] Sync interval changed to {interval_minutes:g} minutes")
        self._wakeup.set()

    def _update_next_run(self) -> None:
        assert self._last_completed is not None
        remaining = max(0.0, self._last_completed + self._interval_seconds - time.monotonic())
        self.next_run_at = datetime.now().astimezone() + timedelta(seconds=remaining)

    async def _loop(self) -> None:
        while self._running:
            report = None
            try:
                report = await self._run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[SYNC] Sync cycle failed: {e}", exc_info=True)

            self._last_completed = time.monotonic()
            self._update_next_run()
            if report is not None:
                report.next_run_at = self.next_run_at
            logger.info(f"[SYNC] Next sync at {self.next_run_at:%H:%M:%S}")

            try:
                await self._sleep_until_due()
            except asyncio.CancelledError:
                break

    async def _sleep_until_due(self) -> None:
        """Sleep until the interval has elapsed, honouring reschedules."""
        while self._running and self._last_completed is not None:
            remaining = self._last_completed + self._interval_seconds - time.monotonic()
            if remaining <= 0:
                return
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return
