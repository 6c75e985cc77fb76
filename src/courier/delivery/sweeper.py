"""Periodic retry sweep.

Runs the scheduler's sweep (and stuck in-flight reclamation) in an asyncio
task until stopped. A failing sweep is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio

import structlog

from courier.exceptions import ConfigurationError
from courier.logging import clear_context

from .retry import RetryScheduler

logger = structlog.get_logger(__name__)


class RetrySweeper:
    """In-process background loop around RetryScheduler.

    Example:
        ```python
        sweeper = RetrySweeper(scheduler, interval_seconds=30)
        sweeper.start()
        ...
        await sweeper.stop()
        ```
    """

    def __init__(
        self,
        scheduler: RetryScheduler,
        interval_seconds: float = 30.0,
        stuck_after_seconds: float | None = 900.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ConfigurationError("interval_seconds must be positive")
        self._scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.stuck_after_seconds = stuck_after_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def sweep_once(self) -> int:
        """One sweep: reclaim abandoned deliveries, then process due ones."""
        if self.stuck_after_seconds is not None:
            released = await self._scheduler.reclaim_stuck(self.stuck_after_seconds)
            if released:
                logger.info("retry_sweep reclaimed", released=released)
        processed = await self._scheduler.process_pending_retries()
        if processed:
            logger.info("retry_sweep completed", processed=processed)
        return processed

    async def _loop(self) -> None:
        # The task inherits whatever its starter had bound.
        clear_context()
        logger.info("retry_sweeper started", interval_seconds=self.interval_seconds)
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.sweep_once()
            except asyncio.CancelledError:
                logger.info("retry_sweeper stopped")
                raise
            except Exception:
                logger.exception("retry_sweep failed")
