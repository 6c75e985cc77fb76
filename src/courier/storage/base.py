"""Storage collaborator contract.

Courier persists exactly three kinds of records: webhooks, deliveries and
the delivery attempt log. Backends implement the abstract primitives; the
read-modify-write helpers for statistics and auto-disable counters are
built on top of update_webhook_with, which each backend makes atomic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Collection
from datetime import datetime
from typing import Any

from courier.models import DeliveryAttempt, DeliveryState, Webhook, WebhookDelivery

# Deliveries in these states are still owned by the pipeline and survive cleanup.
LIVE_STATES: frozenset[DeliveryState] = frozenset(
    {DeliveryState.PENDING, DeliveryState.IN_FLIGHT}
)

WebhookMutator = Callable[[Webhook], dict[str, Any]]


class WebhookStorage(ABC):
    """Persistence for webhooks, deliveries and delivery attempts."""

    async def initialize(self) -> None:
        """Prepare the backend (connections, collections)."""

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self) -> WebhookStorage:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -- webhooks -----------------------------------------------------------

    @abstractmethod
    async def add_webhook(self, webhook: Webhook) -> Webhook: ...

    @abstractmethod
    async def get_webhook(
        self, webhook_id: str, include_deleted: bool = False
    ) -> Webhook | None: ...

    @abstractmethod
    async def list_webhooks(self, include_deleted: bool = False) -> list[Webhook]: ...

    @abstractmethod
    async def update_webhook_with(
        self, webhook_id: str, mutate: WebhookMutator
    ) -> Webhook | None:
        """Atomically apply the field updates computed by mutate.

        mutate receives the current stored webhook and returns a mapping of
        field name to new value. Only those fields are written. Soft-deleted
        webhooks are still updatable so counters settle after a delete.

        Returns:
            The updated webhook, or None if it doesn't exist.
        """

    async def find_matching_webhooks(
        self, event_type: str, store_id: str | None
    ) -> list[Webhook]:
        """Active, non-deleted webhooks subscribed to event_type within store_id's scope."""
        webhooks = await self.list_webhooks()
        return [wh for wh in webhooks if wh.matches(event_type, store_id)]

    async def update_webhook_fields(self, webhook_id: str, **fields: Any) -> Webhook | None:
        """Write the given fields, leaving every other field untouched."""
        return await self.update_webhook_with(webhook_id, lambda _: dict(fields))

    async def soft_delete_webhook(self, webhook_id: str, now: datetime) -> bool:
        """Mark a webhook deleted and inactive. History is kept."""
        existing = await self.get_webhook(webhook_id)
        if existing is None:
            return False
        updated = await self.update_webhook_fields(
            webhook_id, deleted_at=now, is_active=False, updated_at=now
        )
        return updated is not None

    async def record_webhook_attempt(
        self,
        webhook_id: str,
        *,
        success: bool,
        status_code: int | None,
        duration_ms: int,
        error: str | None,
        now: datetime,
    ) -> None:
        """Fold one attempt into the webhook's delivery statistics."""

        def mutate(webhook: Webhook) -> dict[str, Any]:
            updates: dict[str, Any] = {
                "total_deliveries": webhook.total_deliveries + 1,
                "last_triggered_at": now,
                "last_status_code": status_code,
            }
            if success:
                successes = webhook.successful_deliveries + 1
                previous = webhook.average_response_time_ms
                updates["successful_deliveries"] = successes
                updates["last_success_at"] = now
                updates["average_response_time_ms"] = (
                    float(duration_ms)
                    if previous is None
                    else (previous * (successes - 1) + duration_ms) / successes
                )
            else:
                updates["failed_deliveries"] = webhook.failed_deliveries + 1
                updates["last_failure_at"] = now
                updates["last_error"] = error
            return updates

        await self.update_webhook_with(webhook_id, mutate)

    async def increment_consecutive_failures(self, webhook_id: str) -> int | None:
        """Add one to the consecutive failure counter and return the new value."""
        updated = await self.update_webhook_with(
            webhook_id,
            lambda webhook: {"consecutive_failures": webhook.consecutive_failures + 1},
        )
        return updated.consecutive_failures if updated is not None else None

    # -- deliveries ---------------------------------------------------------

    @abstractmethod
    async def add_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery: ...

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None: ...

    @abstractmethod
    async def save_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """Persist a delivery the caller holds the in-flight claim for."""

    @abstractmethod
    async def claim_delivery(
        self,
        delivery_id: str,
        *,
        now: datetime,
        from_states: Collection[DeliveryState] = (DeliveryState.PENDING,),
        due_at: datetime | None = None,
    ) -> WebhookDelivery | None:
        """Conditionally move a delivery to in_flight.

        Succeeds only if the delivery is currently in one of from_states and,
        when due_at is given, its next_attempt_at is not after due_at. The
        check and the write happen atomically, so two callers can never both
        claim the same delivery.

        Returns:
            The claimed delivery, or None if the condition did not hold.
        """

    @abstractmethod
    async def release_delivery(
        self, delivery_id: str, *, claimed_at: datetime | None, now: datetime
    ) -> WebhookDelivery | None:
        """Conditionally return an in-flight delivery to pending.

        Succeeds only if the delivery is still in_flight under the claim
        taken at claimed_at. Atomic with claim_delivery and save_delivery,
        so a claim that was finished or re-taken is never overwritten.

        Returns:
            The released delivery, or None if the condition did not hold.
        """

    @abstractmethod
    async def list_due_deliveries(
        self, now: datetime, limit: int = 100
    ) -> list[WebhookDelivery]:
        """Pending deliveries with next_attempt_at <= now, oldest due first."""

    @abstractmethod
    async def list_deliveries(
        self, webhook_id: str, skip: int = 0, take: int = 50
    ) -> list[WebhookDelivery]:
        """One page of a webhook's deliveries, newest first."""

    @abstractmethod
    async def list_stuck_deliveries(self, claimed_before: datetime) -> list[WebhookDelivery]:
        """In-flight deliveries whose claim is older than claimed_before."""

    @abstractmethod
    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        """Hard-delete deliveries created strictly before cutoff.

        Pending and in-flight deliveries are never deleted. The attempt log of
        each deleted delivery goes with it.

        Returns:
            Number of deliveries deleted.
        """

    # -- attempt log --------------------------------------------------------

    @abstractmethod
    async def add_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt: ...

    @abstractmethod
    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        """Attempt log of a delivery, oldest first."""
