"""Courier service layer.

WebhookService wires storage, signer, executor, retry scheduler,
auto-disable policy and dispatcher together and exposes every management
operation.

Example:
    ```python
    from courier.service import WebhookService

    async with WebhookService.create() as courier:
        webhook = await courier.create_webhook(
            url="https://example.com/hooks",
            name="Orders",
            events=["order.created", "order.paid"],
            store_id="st_1",
        )
        result = await courier.trigger("order.created", {"orderId": 42}, store_id="st_1")
        print(f"Queued {result.matched_count} deliveries")
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx
import pydantic

from courier.clock import Clock, system_clock
from courier.config import Settings
from courier.delivery import (
    AutoDisablePolicy,
    DeliveryExecutor,
    RetryPolicy,
    RetryScheduler,
    WebhookDispatcher,
)
from courier.exceptions import NotFoundError, ValidationError
from courier.models import (
    AuthScheme,
    DeliveryAttempt,
    DeliveryResult,
    TriggerResult,
    Webhook,
    WebhookDelivery,
    WebhookStats,
    build_subscription,
)
from courier.signing import Signer, generate_secret
from courier.storage import WebhookStorage, create_storage

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500

# Fields an operator may change through update_webhook.
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "url",
        "store_id",
        "is_active",
        "http_method",
        "content_type",
        "headers",
        "secret",
        "auth_scheme",
        "api_key",
        "basic_auth_username",
        "basic_auth_password",
        "bearer_token",
        "timeout_seconds",
        "retry_enabled",
        "max_retries",
    }
)


def _from_pydantic(error: pydantic.ValidationError) -> ValidationError:
    first = error.errors()[0]
    field_name = ".".join(str(part) for part in first["loc"]) or "webhook"
    return ValidationError(field_name, first["msg"])


def _subscription(events: Iterable[str] | None, subscribe_to_all: bool) -> Any:
    try:
        return build_subscription(events, subscribe_to_all)
    except pydantic.ValidationError as e:
        raise ValidationError("events", e.errors()[0]["msg"]) from e
    except ValueError as e:
        raise ValidationError("events", str(e)) from e


@dataclass
class WebhookService:
    """High-level webhook management and delivery service.

    Attributes:
        storage: Storage collaborator.
        settings: Configuration settings.
        clock: Time source shared by every component.
        http_client: Optional shared httpx client for deliveries.
    """

    storage: WebhookStorage
    settings: Settings
    clock: Clock = field(default=system_clock)
    http_client: httpx.AsyncClient | None = field(default=None, repr=False)

    signer: Signer = field(init=False, repr=False)
    executor: DeliveryExecutor = field(init=False, repr=False)
    auto_disable: AutoDisablePolicy = field(init=False, repr=False)
    scheduler: RetryScheduler = field(init=False, repr=False)
    dispatcher: WebhookDispatcher = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.signer = Signer(header_name=self.settings.signature_header)
        self.executor = DeliveryExecutor(
            self.storage,
            self.signer,
            config=self.settings,
            clock=self.clock,
            client=self.http_client,
        )
        self.auto_disable = AutoDisablePolicy(
            self.storage, self.settings.auto_disable_threshold, clock=self.clock
        )
        self.scheduler = RetryScheduler(
            self.storage,
            self.executor,
            RetryPolicy.from_settings(self.settings),
            self.auto_disable,
            clock=self.clock,
            max_concurrent=self.settings.max_concurrent_deliveries,
            batch_size=self.settings.retry_sweep_batch_size,
        )
        self.dispatcher = WebhookDispatcher(
            self.storage, self.scheduler, config=self.settings, clock=self.clock
        )

    @classmethod
    def create(cls, settings: Settings | None = None) -> WebhookService:
        """Create a WebhookService with the storage backend named in settings."""
        if settings is None:
            settings = Settings()
        return cls(storage=create_storage(settings), settings=settings)

    async def initialize(self) -> None:
        await self.storage.initialize()

    async def close(self) -> None:
        """Wait for background deliveries, then release resources."""
        await self.dispatcher.drain()
        await self.executor.close()
        await self.storage.close()

    async def __aenter__(self) -> WebhookService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -- webhook management -------------------------------------------------

    def _check_credentials(self, webhook: Webhook) -> None:
        missing = self.signer.missing_credentials(webhook.auth_scheme, webhook.credentials)
        if missing:
            raise ValidationError(
                missing[0], f"required for the {webhook.auth_scheme.value} scheme"
            )

    async def create_webhook(
        self,
        *,
        url: str,
        name: str = "",
        description: str | None = None,
        store_id: str | None = None,
        events: Iterable[str] | None = None,
        subscribe_to_all: bool = False,
        secret: str | None = None,
        auth_scheme: AuthScheme | str = AuthScheme.HMAC_SHA256,
        api_key: str | None = None,
        basic_auth_username: str | None = None,
        basic_auth_password: str | None = None,
        bearer_token: str | None = None,
        http_method: str = "POST",
        content_type: str = "application/json",
        headers: dict[str, str] | None = None,
        is_active: bool = True,
        timeout_seconds: int | None = None,
        retry_enabled: bool = True,
        max_retries: int | None = None,
    ) -> Webhook:
        """Register a webhook. A secret is generated when none is given.

        Raises:
            ValidationError: Bad URL, unknown scheme, empty subscription,
                missing credential for the scheme or out-of-range policy.
        """
        subscription = _subscription(events, subscribe_to_all)
        now = self.clock.now()
        try:
            webhook = Webhook(
                url=url,
                name=name,
                description=description,
                store_id=store_id,
                subscription=subscription,
                secret=secret or generate_secret(),
                auth_scheme=auth_scheme,
                api_key=api_key,
                basic_auth_username=basic_auth_username,
                basic_auth_password=basic_auth_password,
                bearer_token=bearer_token,
                http_method=http_method,
                content_type=content_type,
                headers=headers or {},
                is_active=is_active,
                timeout_seconds=(
                    timeout_seconds
                    if timeout_seconds is not None
                    else self.settings.default_timeout_seconds
                ),
                retry_enabled=retry_enabled,
                max_retries=(
                    max_retries if max_retries is not None else self.settings.default_max_retries
                ),
                created_at=now,
                updated_at=now,
            )
        except pydantic.ValidationError as e:
            raise _from_pydantic(e) from e

        self._check_credentials(webhook)
        await self.storage.add_webhook(webhook)
        logger.info("Created webhook %s for %s", webhook.id, webhook.url)
        return webhook

    async def update_webhook(
        self,
        webhook_id: str,
        *,
        events: Iterable[str] | None = None,
        subscribe_to_all: bool | None = None,
        **changes: Any,
    ) -> Webhook:
        """Apply an operator edit.

        Only the named fields are written. Passing events or
        subscribe_to_all replaces the subscription. Reactivating an
        auto-disabled webhook clears its auto-disable marker.

        Raises:
            NotFoundError: If the webhook doesn't exist.
            ValidationError: If a change is invalid.
        """
        current = await self.get_webhook(webhook_id)

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "field cannot be updated")

        updates = dict(changes)
        if events is not None or subscribe_to_all is not None:
            updates["subscription"] = _subscription(events, bool(subscribe_to_all))

        try:
            candidate = Webhook.model_validate({**current.model_dump(), **updates})
        except pydantic.ValidationError as e:
            raise _from_pydantic(e) from e
        self._check_credentials(candidate)

        now = self.clock.now()
        validated = {key: getattr(candidate, key) for key in updates}
        validated["updated_at"] = now
        if validated.get("is_active") is True and current.is_auto_disabled:
            validated.update(
                is_auto_disabled=False,
                auto_disabled_at=None,
                auto_disable_reason=None,
                consecutive_failures=0,
            )

        updated = await self.storage.update_webhook_fields(webhook_id, **validated)
        if updated is None:
            raise NotFoundError("webhook", webhook_id)
        logger.info("Updated webhook %s (%s)", webhook_id, ", ".join(sorted(updates)))
        return updated

    async def delete_webhook(self, webhook_id: str) -> None:
        """Soft-delete a webhook. Its queued deliveries end as subscriber disabled.

        Raises:
            NotFoundError: If the webhook doesn't exist.
        """
        if not await self.storage.soft_delete_webhook(webhook_id, self.clock.now()):
            raise NotFoundError("webhook", webhook_id)
        logger.info("Deleted webhook %s", webhook_id)

    async def get_webhook(self, webhook_id: str) -> Webhook:
        webhook = await self.storage.get_webhook(webhook_id)
        if webhook is None:
            raise NotFoundError("webhook", webhook_id)
        return webhook

    async def list_webhooks(self, store_id: str | None = None) -> list[Webhook]:
        webhooks = await self.storage.list_webhooks()
        if store_id is None:
            return webhooks
        return [wh for wh in webhooks if wh.store_id == store_id]

    async def list_by_store(self, store_id: str | None) -> list[Webhook]:
        """Webhooks owned by exactly this store (None lists global ones)."""
        return [wh for wh in await self.storage.list_webhooks() if wh.store_id == store_id]

    async def list_by_event(self, event_type: str, store_id: str | None = None) -> list[Webhook]:
        """Webhooks an event of this type and store would be delivered to."""
        return await self.storage.find_matching_webhooks(event_type.strip(), store_id)

    async def list_active(self) -> list[Webhook]:
        return [wh for wh in await self.storage.list_webhooks() if wh.is_active]

    async def get_auto_disabled(self) -> list[Webhook]:
        return await self.auto_disable.get_auto_disabled()

    async def re_enable(self, webhook_id: str) -> bool:
        return await self.auto_disable.re_enable(webhook_id)

    async def get_statistics(self, webhook_id: str) -> WebhookStats:
        webhook = await self.get_webhook(webhook_id)
        return WebhookStats(
            webhook_id=webhook.id,
            total_deliveries=webhook.total_deliveries,
            successful_deliveries=webhook.successful_deliveries,
            failed_deliveries=webhook.failed_deliveries,
            success_rate=webhook.success_rate,
            consecutive_failures=webhook.consecutive_failures,
            average_response_time_ms=webhook.average_response_time_ms,
            last_triggered_at=webhook.last_triggered_at,
            last_success_at=webhook.last_success_at,
            last_failure_at=webhook.last_failure_at,
            last_status_code=webhook.last_status_code,
            last_error=webhook.last_error,
            is_healthy=webhook.is_healthy,
        )

    # -- events and deliveries ----------------------------------------------

    async def trigger(
        self, event_type: str, payload: Any = None, store_id: str | None = None
    ) -> TriggerResult:
        return await self.dispatcher.trigger(
            event_type, {} if payload is None else payload, store_id
        )

    async def test(self, webhook_id: str) -> DeliveryResult:
        return await self.dispatcher.test(webhook_id)

    async def get_deliveries(
        self, webhook_id: str, skip: int = 0, take: int = 50
    ) -> list[WebhookDelivery]:
        if skip < 0:
            raise ValidationError("skip", "must be zero or greater")
        if not 1 <= take <= MAX_PAGE_SIZE:
            raise ValidationError("take", f"must be between 1 and {MAX_PAGE_SIZE}")
        return await self.storage.list_deliveries(webhook_id, skip=skip, take=take)

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery:
        delivery = await self.storage.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def get_delivery_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        await self.get_delivery(delivery_id)
        return await self.storage.list_attempts(delivery_id)

    async def retry_delivery(self, delivery_id: str) -> DeliveryResult:
        return await self.scheduler.retry_delivery(delivery_id)

    async def process_pending_retries(self, limit: int | None = None) -> int:
        return await self.scheduler.process_pending_retries(limit)

    async def reclaim_stuck_deliveries(self, older_than_seconds: float | None = None) -> int:
        if older_than_seconds is None:
            older_than_seconds = self.settings.stuck_delivery_seconds
        return await self.scheduler.reclaim_stuck(older_than_seconds)

    async def cleanup_old_deliveries(self, days_to_keep: int | None = None) -> int:
        """Delete finished deliveries older than the retention window.

        Pending and in-flight deliveries are never deleted, so running this
        twice with the same window deletes nothing the second time.
        """
        if days_to_keep is None:
            days_to_keep = self.settings.delivery_retention_days
        if days_to_keep < 0:
            raise ValidationError("days_to_keep", "must be zero or greater")
        cutoff = self.clock.now() - timedelta(days=days_to_keep)
        deleted = await self.storage.delete_deliveries_before(cutoff)
        logger.info("Cleaned up %d deliveries older than %d days", deleted, days_to_keep)
        return deleted

    # -- signing ------------------------------------------------------------

    def generate_secret(self) -> str:
        return generate_secret()

    def verify_signature(
        self,
        payload: str | bytes,
        signature: str,
        secret: str,
        auth_scheme: AuthScheme | str = AuthScheme.HMAC_SHA256,
    ) -> bool:
        return self.signer.verify(payload, signature, secret, auth_scheme)
