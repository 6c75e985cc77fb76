"""In-process storage backend.

Records are copied on the way in and on the way out, so callers never share
mutable state with the store and every change goes through an explicit write.
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from datetime import datetime

from courier.models import DeliveryAttempt, DeliveryState, Webhook, WebhookDelivery

from .base import LIVE_STATES, WebhookMutator, WebhookStorage


class InMemoryWebhookStorage(WebhookStorage):
    """Dictionary-backed storage guarded by a single asyncio lock.

    Suitable for tests and single-process deployments. Nothing survives a
    restart.
    """

    def __init__(self) -> None:
        self._webhooks: dict[str, Webhook] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._attempts: dict[str, list[DeliveryAttempt]] = {}
        self._lock = asyncio.Lock()

    # -- webhooks -----------------------------------------------------------

    async def add_webhook(self, webhook: Webhook) -> Webhook:
        async with self._lock:
            self._webhooks[webhook.id] = webhook.model_copy(deep=True)
        return webhook

    async def get_webhook(
        self, webhook_id: str, include_deleted: bool = False
    ) -> Webhook | None:
        async with self._lock:
            webhook = self._webhooks.get(webhook_id)
            if webhook is None or (webhook.is_deleted and not include_deleted):
                return None
            return webhook.model_copy(deep=True)

    async def list_webhooks(self, include_deleted: bool = False) -> list[Webhook]:
        async with self._lock:
            webhooks = [
                wh.model_copy(deep=True)
                for wh in self._webhooks.values()
                if include_deleted or not wh.is_deleted
            ]
        webhooks.sort(key=lambda wh: wh.created_at)
        return webhooks

    async def update_webhook_with(
        self, webhook_id: str, mutate: WebhookMutator
    ) -> Webhook | None:
        async with self._lock:
            current = self._webhooks.get(webhook_id)
            if current is None:
                return None
            updates = mutate(current.model_copy(deep=True))
            updated = Webhook.model_validate({**current.model_dump(), **updates})
            self._webhooks[webhook_id] = updated
            return updated.model_copy(deep=True)

    # -- deliveries ---------------------------------------------------------

    async def add_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self._lock:
            self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            return delivery.model_copy(deep=True) if delivery is not None else None

    async def save_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self._lock:
            self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery

    async def claim_delivery(
        self,
        delivery_id: str,
        *,
        now: datetime,
        from_states: Collection[DeliveryState] = (DeliveryState.PENDING,),
        due_at: datetime | None = None,
    ) -> WebhookDelivery | None:
        async with self._lock:
            current = self._deliveries.get(delivery_id)
            if current is None or current.state not in from_states:
                return None
            if (
                due_at is not None
                and current.next_attempt_at is not None
                and current.next_attempt_at > due_at
            ):
                return None
            claimed = current.model_copy(deep=True).mark_in_flight(now)
            self._deliveries[delivery_id] = claimed
            return claimed.model_copy(deep=True)

    async def release_delivery(
        self, delivery_id: str, *, claimed_at: datetime | None, now: datetime
    ) -> WebhookDelivery | None:
        async with self._lock:
            current = self._deliveries.get(delivery_id)
            if (
                current is None
                or current.state is not DeliveryState.IN_FLIGHT
                or current.claimed_at != claimed_at
            ):
                return None
            released = current.model_copy(deep=True).release(now)
            self._deliveries[delivery_id] = released
            return released.model_copy(deep=True)

    async def list_due_deliveries(
        self, now: datetime, limit: int = 100
    ) -> list[WebhookDelivery]:
        async with self._lock:
            due = [
                d.model_copy(deep=True)
                for d in self._deliveries.values()
                if d.state is DeliveryState.PENDING
                and (d.next_attempt_at is None or d.next_attempt_at <= now)
            ]
        due.sort(key=lambda d: d.next_attempt_at or d.created_at)
        return due[:limit]

    async def list_deliveries(
        self, webhook_id: str, skip: int = 0, take: int = 50
    ) -> list[WebhookDelivery]:
        async with self._lock:
            deliveries = [
                d.model_copy(deep=True)
                for d in self._deliveries.values()
                if d.webhook_id == webhook_id
            ]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[skip : skip + take]

    async def list_stuck_deliveries(self, claimed_before: datetime) -> list[WebhookDelivery]:
        async with self._lock:
            return [
                d.model_copy(deep=True)
                for d in self._deliveries.values()
                if d.state is DeliveryState.IN_FLIGHT
                and d.claimed_at is not None
                and d.claimed_at < claimed_before
            ]

    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                d.id
                for d in self._deliveries.values()
                if d.created_at < cutoff and d.state not in LIVE_STATES
            ]
            for delivery_id in doomed:
                del self._deliveries[delivery_id]
                self._attempts.pop(delivery_id, None)
            return len(doomed)

    # -- attempt log --------------------------------------------------------

    async def add_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        async with self._lock:
            self._attempts.setdefault(attempt.delivery_id, []).append(attempt)
        return attempt

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        async with self._lock:
            attempts = list(self._attempts.get(delivery_id, []))
        attempts.sort(key=lambda a: (a.attempt_number, a.started_at))
        return attempts
