"""Tests for the background retry sweeper."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from courier.delivery import RetryScheduler, RetrySweeper
from courier.exceptions import ConfigurationError


@pytest.fixture
def scheduler() -> MagicMock:
    scheduler = MagicMock(spec=RetryScheduler)
    scheduler.reclaim_stuck = AsyncMock(return_value=0)
    scheduler.process_pending_retries = AsyncMock(return_value=2)
    return scheduler


class TestRetrySweeper:
    """Tests for RetrySweeper."""

    def test_rejects_non_positive_interval(self, scheduler: MagicMock) -> None:
        with pytest.raises(ConfigurationError):
            RetrySweeper(scheduler, interval_seconds=0)

    @pytest.mark.asyncio
    async def test_sweep_once_reclaims_then_processes(self, scheduler: MagicMock) -> None:
        sweeper = RetrySweeper(scheduler, interval_seconds=1, stuck_after_seconds=600)

        assert await sweeper.sweep_once() == 2

        scheduler.reclaim_stuck.assert_awaited_once_with(600)
        scheduler.process_pending_retries.assert_awaited_once_with()

    @pytest.mark.asyncio
    async def test_reclaim_can_be_disabled(self, scheduler: MagicMock) -> None:
        sweeper = RetrySweeper(scheduler, interval_seconds=1, stuck_after_seconds=None)
        await sweeper.sweep_once()
        scheduler.reclaim_stuck.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_loop_survives_failed_sweep(self, scheduler: MagicMock) -> None:
        """A sweep that raises is logged and the next one still runs."""
        scheduler.process_pending_retries.side_effect = [RuntimeError("storage down"), 1, 1, 1]
        sweeper = RetrySweeper(scheduler, interval_seconds=0.01)

        sweeper.start()
        assert sweeper.running
        for _ in range(100):
            if scheduler.process_pending_retries.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert not sweeper.running
        assert scheduler.process_pending_retries.await_count >= 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_without_start(
        self, scheduler: MagicMock
    ) -> None:
        sweeper = RetrySweeper(scheduler, interval_seconds=60)
        await sweeper.stop()

        sweeper.start()
        task = sweeper._task
        sweeper.start()
        assert sweeper._task is task

        await sweeper.stop()
        assert not sweeper.running
