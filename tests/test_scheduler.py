"""Tests for the periodic sync scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from kanbn_sync.scheduler import SyncScheduler


async def _wait_for_calls(mock: AsyncMock, count: int, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while mock.await_count < count:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestSyncScheduler:
    """Test SyncScheduler lifecycle."""

    @pytest.mark.asyncio
    async def test_runs_immediately_on_start(self) -> None:
        run_cycle = AsyncMock(return_value=None)
        scheduler = SyncScheduler(run_cycle)

        await scheduler.start(60)
        await _wait_for_calls(run_cycle, 1)
        await scheduler.stop()

        assert run_cycle.await_count == 1
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_next_run_recorded_on_report(self) -> None:
        report = MagicMock(next_run_at=None)
        run_cycle = AsyncMock(return_value=report)
        scheduler = SyncScheduler(run_cycle)

        await scheduler.start(60)
        await _wait_for_calls(run_cycle, 1)
        await asyncio.sleep(0.01)

        assert isinstance(scheduler.next_run_at, datetime)
        assert report.next_run_at == scheduler.next_run_at
        remaining = (scheduler.next_run_at - datetime.now().astimezone()).total_seconds()
        assert 3500 < remaining <= 3600
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_repeats_after_interval(self) -> None:
        run_cycle = AsyncMock(return_value=None)
        scheduler = SyncScheduler(run_cycle)

        await scheduler.start(0.0005)  # 30ms
        await _wait_for_calls(run_cycle, 3)
        await scheduler.stop()

        assert run_cycle.await_count >= 3

    @pytest.mark.asyncio
    async def test_failed_cycle_does_not_stop_loop(self) -> None:
        run_cycle = AsyncMock(side_effect=[RuntimeError("boom"), None, None])
        scheduler = SyncScheduler(run_cycle)

        await scheduler.start(0.0005)
        await _wait_for_calls(run_cycle, 2)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_reschedule_applies_to_pending_wait(self) -> None:
        run_cycle = AsyncMock(return_value=None)
        scheduler = SyncScheduler(run_cycle)

        await scheduler.start(60)
        await _wait_for_calls(run_cycle, 1)
        await asyncio.sleep(0.01)

        scheduler.reschedule(0.0005)
        await _wait_for_calls(run_cycle, 2)
        await scheduler.stop()

        assert scheduler.interval_minutes == pytest.approx(0.0005)

    @pytest.mark.asyncio
    async def test_stop_cancels_running_cycle(self) -> None:
        started = asyncio.Event()

        async def slow_cycle() -> None:
            started.set()
            await asyncio.sleep(60)

        scheduler = SyncScheduler(slow_cycle)
        await scheduler.start(60)
        await asyncio.wait_for(started.wait(), timeout=2)

        await scheduler.stop()

        assert scheduler._task is None
        assert scheduler.next_run_at is None

    @pytest.mark.asyncio
    async def test_start_twice_is_a_no_op(self) -> None:
        run_cycle = AsyncMock(return_value=None)
        scheduler = SyncScheduler(run_cycle)

        await scheduler.start(60)
        task = scheduler._task
        await scheduler.start(60)

        assert scheduler._task is task
        await scheduler.stop()
