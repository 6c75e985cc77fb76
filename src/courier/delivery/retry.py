"""Retry scheduling.

RetryPolicy computes backoff delays; RetryScheduler drives a claimed
delivery through one attempt and decides what happens next:

    succeeded      -> succeeded
    terminal       -> failed_terminal
    retryable      -> pending, next_attempt_at = now + backoff(n)
                      or failed_terminal once the retry budget is spent

With max_retries = N a delivery gets at most 1 + N automatic attempts.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta

from courier.clock import Clock, system_clock
from courier.config import Settings, settings
from courier.exceptions import ConfigurationError, NotFoundError
from courier.logging import bound_context
from courier.models import (
    AttemptOutcome,
    DeliveryResult,
    DeliveryState,
    OutcomeStatus,
    Webhook,
    WebhookDelivery,
)
from courier.storage import WebhookStorage

from .auto_disable import AutoDisablePolicy
from .executor import DeliveryExecutor

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Exponential backoff with a cap and optional additive jitter.

    base_backoff(n) = min(base * 2^(n-1), cap)
    backoff(n)      = base_backoff(n) + uniform(0, base)   (jitter on)

    n is the retry number, starting at 1.
    """

    def __init__(
        self,
        base_delay_seconds: float = 60.0,
        max_delay_seconds: float = 3600.0,
        jitter: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        if base_delay_seconds <= 0:
            raise ConfigurationError("base_delay_seconds must be positive")
        if max_delay_seconds < base_delay_seconds:
            raise ConfigurationError("max_delay_seconds must be at least base_delay_seconds")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> RetryPolicy:
        config = config or settings
        return cls(
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            jitter=config.retry_jitter,
        )

    def base_backoff(self, retry_number: int) -> float:
        """Delay before jitter for the given retry (1-based)."""
        exponent = max(retry_number, 1) - 1
        # Past 2^64 the cap has long been reached.
        if exponent >= 64:
            return self.max_delay_seconds
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def backoff(self, retry_number: int) -> float:
        delay = self.base_backoff(retry_number)
        if self.jitter:
            delay += self._rng.uniform(0, self.base_delay_seconds)
        return delay

    def next_attempt_at(self, retry_number: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.backoff(retry_number))


class RetryScheduler:
    """Runs claimed deliveries and schedules their retries.

    Only the holder of a delivery's in-flight claim may attempt it, so the
    attempts of one delivery are strictly ordered even when sweeps overlap.

    Example:
        ```python
        scheduler = RetryScheduler(storage, executor, policy, auto_disable)
        processed = await scheduler.process_pending_retries()
        ```
    """

    def __init__(
        self,
        storage: WebhookStorage,
        executor: DeliveryExecutor,
        policy: RetryPolicy,
        auto_disable: AutoDisablePolicy,
        *,
        clock: Clock = system_clock,
        max_concurrent: int = 10,
        batch_size: int = 100,
    ) -> None:
        self._storage = storage
        self._executor = executor
        self._policy = policy
        self._auto_disable = auto_disable
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._batch_size = batch_size

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def schedule_next(
        self,
        delivery: WebhookDelivery,
        outcome: AttemptOutcome,
        webhook: Webhook | None,
    ) -> WebhookDelivery:
        """Apply an attempt outcome to an in-flight delivery."""
        now = self._clock.now()
        if outcome.status is OutcomeStatus.SUCCEEDED:
            return delivery.mark_succeeded(outcome, now)
        if outcome.status is OutcomeStatus.FAILED_TERMINAL:
            return delivery.mark_terminal(now, outcome=outcome)

        if delivery.is_test:
            return delivery.mark_terminal(now, outcome=outcome)
        if webhook is None or not webhook.retry_enabled:
            return delivery.mark_terminal(
                now, outcome=outcome, error=f"retries disabled: {outcome.error}"
            )
        if delivery.attempt_count >= webhook.max_retries:
            logger.warning(
                "Retry budget exhausted for delivery %s after %d retries",
                delivery.id,
                delivery.attempt_count,
            )
            return delivery.mark_terminal(
                now, outcome=outcome, error=f"retry budget exhausted: {outcome.error}"
            )

        next_at = self._policy.next_attempt_at(delivery.attempt_count + 1, now)
        delivery.mark_retry_scheduled(outcome, next_at, now)
        logger.info(
            "Delivery %s scheduled for retry %d at %s",
            delivery.id,
            delivery.attempt_count,
            next_at.isoformat(),
        )
        return delivery

    async def run(
        self, delivery: WebhookDelivery, *, check_active: bool = True
    ) -> DeliveryResult:
        """Attempt a claimed delivery once, then persist the next state.

        Terminal outcomes feed the auto-disable policy unless they are not
        the subscriber's fault or the delivery is a test.

        If storage fails before the next state is saved, the claim is
        released (or the decided state saved) before the error propagates,
        so the delivery is not left in flight until reclaim_stuck finds it.
        """
        with bound_context(webhook_id=delivery.webhook_id, delivery_id=delivery.id):
            async with self._semaphore:
                try:
                    webhook = await self._storage.get_webhook(
                        delivery.webhook_id, include_deleted=True
                    )
                    outcome = await self._executor.attempt(
                        delivery, webhook, check_active=check_active
                    )
                    self.schedule_next(delivery, outcome, webhook)
                    await self._storage.save_delivery(delivery)
                except Exception:
                    await self._abandon(delivery)
                    raise

            if not delivery.is_test:
                if delivery.state is DeliveryState.SUCCEEDED:
                    await self._auto_disable.record_success(delivery.webhook_id)
                elif (
                    delivery.state is DeliveryState.FAILED_TERMINAL
                    and outcome.counts_as_failure
                ):
                    await self._auto_disable.record_terminal_failure(
                        delivery.webhook_id, delivery.last_error or "delivery failed"
                    )

        return DeliveryResult(
            webhook_id=delivery.webhook_id,
            delivery_id=delivery.id,
            success=outcome.success,
            state=delivery.state,
            status_code=outcome.status_code,
            duration_ms=outcome.duration_ms,
            error=delivery.last_error if not outcome.success else None,
            response_snippet=outcome.response_snippet,
        )

    async def _abandon(self, delivery: WebhookDelivery) -> None:
        try:
            if delivery.state is DeliveryState.IN_FLIGHT:
                released = await self._storage.release_delivery(
                    delivery.id, claimed_at=delivery.claimed_at, now=self._clock.now()
                )
                if released is not None:
                    logger.warning("Released delivery %s after a failed run", delivery.id)
            else:
                await self._storage.save_delivery(delivery)
        except Exception:
            logger.exception("Could not release delivery %s", delivery.id)

    async def process_pending_retries(self, limit: int | None = None) -> int:
        """Claim and attempt every due pending delivery.

        Returns:
            Number of deliveries claimed and attempted by this call.
        """
        now = self._clock.now()
        due = await self._storage.list_due_deliveries(now, limit or self._batch_size)
        claimed: list[WebhookDelivery] = []
        for candidate in due:
            delivery = await self._storage.claim_delivery(candidate.id, now=now, due_at=now)
            if delivery is not None:
                claimed.append(delivery)

        if not claimed:
            return 0

        results = await asyncio.gather(
            *(self.run(delivery) for delivery in claimed), return_exceptions=True
        )
        for delivery, result in zip(claimed, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Retry of delivery %s failed: %s", delivery.id, result)

        logger.info("Processed %d pending deliveries", len(claimed))
        return len(claimed)

    async def retry_delivery(self, delivery_id: str) -> DeliveryResult:
        """Operator-forced retry, ignoring next_attempt_at.

        Allowed from pending and failed_terminal. The retry budget still
        applies to what happens after this attempt.

        Raises:
            NotFoundError: If the delivery doesn't exist.
        """
        delivery = await self._storage.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)

        def refused(reason: str) -> DeliveryResult:
            return DeliveryResult(
                webhook_id=delivery.webhook_id,
                delivery_id=delivery.id,
                success=False,
                state=delivery.state,
                error=reason,
            )

        if delivery.is_test:
            return refused("test deliveries cannot be retried")
        if delivery.state is DeliveryState.SUCCEEDED:
            return refused("delivery already succeeded")

        claimed = await self._storage.claim_delivery(
            delivery_id,
            now=self._clock.now(),
            from_states=(DeliveryState.PENDING, DeliveryState.FAILED_TERMINAL),
        )
        if claimed is None:
            return refused("delivery is already in flight")
        logger.info("Manual retry of delivery %s", delivery_id)
        return await self.run(claimed)

    async def reclaim_stuck(self, older_than_seconds: float) -> int:
        """Return deliveries abandoned in flight (crashed worker) to the queue.

        Each release is conditional on the claim seen when listing, so a
        delivery that finished or was re-claimed meanwhile is left alone.

        Returns:
            Number of deliveries released.
        """
        now = self._clock.now()
        cutoff = now - timedelta(seconds=older_than_seconds)
        released = 0
        for stuck in await self._storage.list_stuck_deliveries(cutoff):
            if await self._storage.release_delivery(
                stuck.id, claimed_at=stuck.claimed_at, now=now
            ):
                released += 1
        if released:
            logger.warning("Released %d deliveries stuck in flight", released)
        return released
