"""Tests for the WebhookService management surface."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from conftest import START, Endpoint, ManualClock, make_webhook

from courier.config import Settings
from courier.exceptions import NotFoundError, ValidationError
from courier.models import AllEvents, AuthScheme, EventSet
from courier.service import WebhookService
from courier.storage import InMemoryWebhookStorage

VALID = {"url": "https://hooks.example.com/orders", "events": ["order.created"]}


class TestCreateWebhook:
    """Tests for WebhookService.create_webhook."""

    @pytest.mark.asyncio
    async def test_creates_with_defaults(self, service: WebhookService) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders",
            name="Orders",
            events=["order.created", "order.paid"],
            store_id="st_1",
        )

        assert webhook.id.startswith("whk_")
        assert webhook.store_id == "st_1"
        assert webhook.subscription == EventSet(events=frozenset({"order.created", "order.paid"}))
        assert webhook.timeout_seconds == 30
        assert webhook.max_retries == 3
        assert webhook.created_at == START
        assert len(webhook.secret) >= 43
        assert await service.get_webhook(webhook.id) == webhook

    @pytest.mark.asyncio
    async def test_settings_supply_policy_defaults(
        self, service_factory: Callable[..., WebhookService]
    ) -> None:
        service = service_factory(default_timeout_seconds=5, default_max_retries=7)
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", subscribe_to_all=True
        )
        assert webhook.timeout_seconds == 5
        assert webhook.max_retries == 7
        assert isinstance(webhook.subscription, AllEvents)

    @pytest.mark.asyncio
    async def test_keeps_given_secret(self, service: WebhookService) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", events=["*"], secret="my-secret"
        )
        assert webhook.secret == "my-secret"
        assert isinstance(webhook.subscription, AllEvents)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"url": "not a url"}, "url"),
            ({"url": "ftp://example.com"}, "url"),
            ({"events": []}, "events"),
            ({"events": None}, "events"),
            ({"auth_scheme": "rsa"}, "auth_scheme"),
            ({"http_method": "GET"}, "http_method"),
            ({"timeout_seconds": 0}, "timeout_seconds"),
            ({"max_retries": -1}, "max_retries"),
            ({"auth_scheme": "api-key"}, "api_key"),
            ({"auth_scheme": "bearer-token", "bearer_token": ""}, "bearer_token"),
            (
                {"auth_scheme": "basic-auth", "basic_auth_username": "shop"},
                "basic_auth_password",
            ),
        ],
    )
    async def test_rejects_invalid(
        self, service: WebhookService, kwargs: dict, field: str
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create_webhook(**{**VALID, **kwargs})
        assert exc_info.value.field == field
        assert await service.list_webhooks() == []

    @pytest.mark.asyncio
    async def test_credentials_stored_and_snapshotted(
        self, service: WebhookService, endpoint: Endpoint
    ) -> None:
        webhook = await service.create_webhook(
            **VALID, auth_scheme="bearer-token", bearer_token="tok-456"
        )
        assert webhook.bearer_token == "tok-456"
        assert "tok-456" not in repr(webhook)

        result = await service.trigger("order.created", {"orderId": 1})
        await service.dispatcher.drain()

        delivery = await service.get_delivery(result.delivery_ids[0])
        assert delivery.bearer_token == "tok-456"
        assert endpoint.requests[0].headers["Authorization"] == "Bearer tok-456"


class TestUpdateWebhook:
    """Tests for WebhookService.update_webhook."""

    @pytest.mark.asyncio
    async def test_updates_named_fields_only(
        self, service: WebhookService, clock: ManualClock
    ) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", name="Orders", events=["order.created"]
        )
        clock.advance(60)

        updated = await service.update_webhook(webhook.id, name="Renamed", max_retries=5)

        assert updated.name == "Renamed"
        assert updated.max_retries == 5
        assert updated.url == webhook.url
        assert updated.secret == webhook.secret
        assert updated.updated_at == clock.now()

    @pytest.mark.asyncio
    async def test_replaces_subscription(self, service: WebhookService) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", events=["order.created"]
        )
        updated = await service.update_webhook(webhook.id, events=["stock.low", "stock.out"])
        assert updated.subscription == EventSet(events=frozenset({"stock.low", "stock.out"}))

        updated = await service.update_webhook(webhook.id, subscribe_to_all=True)
        assert isinstance(updated.subscription, AllEvents)

    @pytest.mark.asyncio
    async def test_does_not_overwrite_statistics(
        self, service: WebhookService, storage: InMemoryWebhookStorage
    ) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", events=["order.created"]
        )
        await storage.record_webhook_attempt(
            webhook.id, success=True, status_code=200, duration_ms=10, error=None, now=START
        )

        await service.update_webhook(webhook.id, name="Renamed")

        stored = await service.get_webhook(webhook.id)
        assert stored.total_deliveries == 1

    @pytest.mark.asyncio
    async def test_reactivating_clears_auto_disable(
        self, service: WebhookService, storage: InMemoryWebhookStorage
    ) -> None:
        webhook = make_webhook(
            is_active=False,
            is_auto_disabled=True,
            auto_disabled_at=START,
            auto_disable_reason="10 consecutive failures; last: HTTP 404",
            consecutive_failures=10,
        )
        await storage.add_webhook(webhook)

        updated = await service.update_webhook(webhook.id, is_active=True)

        assert updated.is_active
        assert not updated.is_auto_disabled
        assert updated.auto_disable_reason is None
        assert updated.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_rejects_invalid_change(self, service: WebhookService) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", events=["order.created"]
        )
        with pytest.raises(ValidationError) as exc_info:
            await service.update_webhook(webhook.id, url="nope")
        assert exc_info.value.field == "url"
        assert (await service.get_webhook(webhook.id)).url == webhook.url

    @pytest.mark.asyncio
    async def test_switching_scheme_requires_credential(self, service: WebhookService) -> None:
        webhook = await service.create_webhook(**VALID)
        with pytest.raises(ValidationError) as exc_info:
            await service.update_webhook(webhook.id, auth_scheme="api-key")
        assert exc_info.value.field == "api_key"

        updated = await service.update_webhook(webhook.id, auth_scheme="api-key", api_key="k-1")
        assert updated.auth_scheme is AuthScheme.API_KEY
        assert updated.api_key == "k-1"

    @pytest.mark.asyncio
    async def test_rejects_non_updatable_field(self, service: WebhookService) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", events=["order.created"]
        )
        with pytest.raises(ValidationError) as exc_info:
            await service.update_webhook(webhook.id, total_deliveries=0)
        assert exc_info.value.field == "total_deliveries"

    @pytest.mark.asyncio
    async def test_unknown_webhook(self, service: WebhookService) -> None:
        with pytest.raises(NotFoundError):
            await service.update_webhook("whk_missing", name="x")


class TestDeleteAndQueries:
    """Tests for deletion and webhook queries."""

    @pytest.mark.asyncio
    async def test_delete(self, service: WebhookService) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders", events=["order.created"]
        )
        await service.delete_webhook(webhook.id)

        with pytest.raises(NotFoundError):
            await service.get_webhook(webhook.id)
        with pytest.raises(NotFoundError):
            await service.delete_webhook(webhook.id)
        result = await service.trigger("order.created", {})
        assert result.matched_count == 0

    @pytest.mark.asyncio
    async def test_queries(self, service: WebhookService, storage: InMemoryWebhookStorage) -> None:
        store_hook = make_webhook(store_id="st_1", created_at=START)
        global_hook = make_webhook(store_id=None, subscription=AllEvents(), created_at=START)
        inactive = make_webhook(store_id="st_1", is_active=False, created_at=START)
        for webhook in (store_hook, global_hook, inactive):
            await storage.add_webhook(webhook)

        assert len(await service.list_webhooks()) == 3
        assert {wh.id for wh in await service.list_webhooks(store_id="st_1")} == {
            store_hook.id,
            inactive.id,
        }
        assert [wh.id for wh in await service.list_by_store(None)] == [global_hook.id]
        assert {wh.id for wh in await service.list_by_event("order.paid", "st_1")} == {
            store_hook.id,
            global_hook.id,
        }
        assert [wh.id for wh in await service.list_by_event("stock.low")] == [global_hook.id]
        assert {wh.id for wh in await service.list_active()} == {store_hook.id, global_hook.id}

    @pytest.mark.asyncio
    async def test_statistics(
        self, service: WebhookService, storage: InMemoryWebhookStorage, endpoint: Endpoint
    ) -> None:
        endpoint.script(200, 200, 404)
        webhook = make_webhook()
        await storage.add_webhook(webhook)
        for _ in range(3):
            await service.trigger("order.created", {})
            await service.dispatcher.drain()

        stats = await service.get_statistics(webhook.id)

        assert stats.total_deliveries == 3
        assert stats.successful_deliveries == 2
        assert stats.failed_deliveries == 1
        assert stats.success_rate == pytest.approx(66.67)
        assert stats.consecutive_failures == 1
        assert stats.last_status_code == 404
        assert stats.is_healthy

    @pytest.mark.asyncio
    async def test_statistics_unknown_webhook(self, service: WebhookService) -> None:
        with pytest.raises(NotFoundError):
            await service.get_statistics("whk_missing")


class TestDeliveryQueries:
    """Tests for delivery history queries."""

    @pytest.mark.asyncio
    async def test_get_deliveries_pagination_bounds(self, service: WebhookService) -> None:
        with pytest.raises(ValidationError):
            await service.get_deliveries("whk_1", skip=-1)
        with pytest.raises(ValidationError):
            await service.get_deliveries("whk_1", take=0)
        with pytest.raises(ValidationError):
            await service.get_deliveries("whk_1", take=501)
        assert await service.get_deliveries("whk_1") == []

    @pytest.mark.asyncio
    async def test_delivery_and_attempts(self, service: WebhookService) -> None:
        await service.storage.add_webhook(make_webhook())
        result = await service.trigger("order.created", {"orderId": 1})
        await service.dispatcher.drain()
        delivery_id = result.delivery_ids[0]

        delivery = await service.get_delivery(delivery_id)
        attempts = await service.get_delivery_attempts(delivery_id)

        assert delivery.id == delivery_id
        assert len(attempts) == 1
        assert attempts[0].status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_delivery(self, service: WebhookService) -> None:
        with pytest.raises(NotFoundError):
            await service.get_delivery("dlv_missing")
        with pytest.raises(NotFoundError):
            await service.get_delivery_attempts("dlv_missing")


class TestSigningHelpers:
    """Tests for the signing helpers exposed by the service."""

    def test_generate_secret(self, service_factory: Callable[..., WebhookService]) -> None:
        service = service_factory()
        assert service.generate_secret() != service.generate_secret()

    @pytest.mark.asyncio
    async def test_subscriber_can_verify_delivery(
        self, service: WebhookService, endpoint: Endpoint
    ) -> None:
        webhook = await service.create_webhook(
            url="https://hooks.example.com/orders",
            events=["order.created"],
            auth_scheme=AuthScheme.HMAC_SHA512,
        )
        await service.trigger("order.created", {"orderId": 1})
        await service.dispatcher.drain()

        request = endpoint.requests[0]
        signature = request.headers["X-Webhook-Signature"]
        assert signature.startswith("sha512=")
        assert service.verify_signature(
            request.content, signature, webhook.secret, AuthScheme.HMAC_SHA512
        )
        assert not service.verify_signature(
            request.content + b"x", signature, webhook.secret, AuthScheme.HMAC_SHA512
        )


class TestLifecycle:
    """Tests for service construction and shutdown."""

    @pytest.mark.asyncio
    async def test_create_from_settings(self) -> None:
        service = WebhookService.create(Settings(storage_backend="memory"))
        assert isinstance(service.storage, InMemoryWebhookStorage)
        async with service as svc:
            assert svc is service

    @pytest.mark.asyncio
    async def test_close_drains_background_deliveries(
        self, service_factory: Callable[..., WebhookService], endpoint: Endpoint
    ) -> None:
        service = service_factory()
        await service.storage.add_webhook(make_webhook())
        await service.trigger("order.created", {})

        await service.close()

        assert service.dispatcher.pending_tasks == 0
        assert endpoint.calls == 1
