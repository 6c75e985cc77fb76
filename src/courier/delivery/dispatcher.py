"""Event dispatch.

trigger() turns an application event into one pending delivery per matching
webhook and returns immediately; the HTTP work runs in background tasks.
test() is the one synchronous path: it sends a ping and waits for it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

import pydantic
from pydantic_core import PydanticSerializationError

from courier.clock import Clock, system_clock
from courier.config import Settings, settings
from courier.exceptions import NotFoundError, ValidationError
from courier.logging import bound_context
from courier.models import (
    TEST_PING,
    DeliveryResult,
    TriggerResult,
    Webhook,
    WebhookDelivery,
    WebhookEvent,
)
from courier.storage import WebhookStorage

from .retry import RetryScheduler

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """Matches events to webhooks and hands deliveries to the scheduler.

    Example:
        ```python
        dispatcher = WebhookDispatcher(storage, scheduler)
        result = await dispatcher.trigger("order.created", {"orderId": 42}, store_id="st_1")
        await dispatcher.drain()
        ```
    """

    def __init__(
        self,
        storage: WebhookStorage,
        scheduler: RetryScheduler,
        *,
        config: Settings | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._storage = storage
        self._scheduler = scheduler
        self._config = config or settings
        self._clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def _build_event(
        self, event_type: str, payload: Any, store_id: str | None
    ) -> tuple[WebhookEvent, str]:
        try:
            event = WebhookEvent(
                event_type=event_type,
                store_id=store_id,
                timestamp=self._clock.now(),
                data=payload,
            )
        except pydantic.ValidationError as e:
            raise ValidationError("event_type", e.errors()[0]["msg"]) from e
        try:
            body = event.to_json()
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise ValidationError("payload", f"not JSON-serializable: {e}") from e
        return event, body

    def _snapshot(
        self, webhook: Webhook, event: WebhookEvent, body: str, *, is_test: bool = False
    ) -> WebhookDelivery:
        now = self._clock.now()
        return WebhookDelivery(
            webhook_id=webhook.id,
            store_id=event.store_id,
            event_type=event.event_type,
            payload=body,
            target_url=str(webhook.url),
            secret=webhook.secret,
            auth_scheme=webhook.auth_scheme,
            **webhook.credentials,
            http_method=webhook.http_method,
            content_type=webhook.content_type,
            headers=dict(webhook.headers),
            next_attempt_at=now,
            is_test=is_test,
            created_at=now,
            updated_at=now,
        )

    async def trigger(
        self, event_type: str, payload: Any, store_id: str | None = None
    ) -> TriggerResult:
        """Raise an event.

        Creates exactly one pending delivery per matching webhook. The caller
        never waits on subscriber I/O.

        Raises:
            ValidationError: Empty event name or payload that can't be serialized.
        """
        event, body = self._build_event(event_type, payload, store_id)
        webhooks = await self._storage.find_matching_webhooks(event.event_type, store_id)
        if not webhooks:
            logger.debug("No webhooks subscribed to %s (store %s)", event.event_type, store_id)
            return TriggerResult(event_type=event.event_type, matched_count=0)

        deliveries = [self._snapshot(webhook, event, body) for webhook in webhooks]
        for delivery in deliveries:
            await self._storage.add_delivery(delivery)

        if self._config.deliver_immediately:
            for delivery in deliveries:
                self._spawn(self._deliver(delivery.id))

        logger.info(
            "Event %s matched %d webhooks (store %s)",
            event.event_type,
            len(deliveries),
            store_id,
        )
        return TriggerResult(
            event_type=event.event_type,
            matched_count=len(deliveries),
            delivery_ids=[d.id for d in deliveries],
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, delivery_id: str) -> None:
        with bound_context(delivery_id=delivery_id):
            try:
                claimed = await self._storage.claim_delivery(delivery_id, now=self._clock.now())
                if claimed is None:
                    # A sweep got there first.
                    return
                await self._scheduler.run(claimed)
            except Exception:
                logger.exception("Background delivery %s failed", delivery_id)

    async def drain(self) -> None:
        """Wait for every background delivery task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def test(self, webhook_id: str) -> DeliveryResult:
        """Send a test.ping to a webhook and wait for the result.

        Works on inactive webhooks. The delivery and its attempt are logged,
        but it is never retried and never counts toward auto-disable.

        Raises:
            NotFoundError: If the webhook doesn't exist.
        """
        webhook = await self._storage.get_webhook(webhook_id)
        if webhook is None:
            raise NotFoundError("webhook", webhook_id)

        event, body = self._build_event(
            TEST_PING,
            {
                "message": "This is a test webhook delivery",
                "webhookId": webhook.id,
                "webhookName": webhook.name,
            },
            webhook.store_id,
        )
        delivery = self._snapshot(webhook, event, body, is_test=True)
        await self._storage.add_delivery(delivery)
        claimed = await self._storage.claim_delivery(delivery.id, now=self._clock.now())
        if claimed is None:
            return DeliveryResult(
                webhook_id=webhook.id,
                delivery_id=delivery.id,
                success=False,
                error="test delivery could not be claimed",
            )
        return await self._scheduler.run(claimed, check_active=False)
