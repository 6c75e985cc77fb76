"""Tests for the auto-disable policy."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from conftest import START, Endpoint, ManualClock, make_webhook

from courier.delivery import AutoDisablePolicy
from courier.exceptions import ConfigurationError
from courier.service import WebhookService
from courier.storage import InMemoryWebhookStorage


@pytest.fixture
def policy(storage: InMemoryWebhookStorage, clock: ManualClock) -> AutoDisablePolicy:
    return AutoDisablePolicy(storage, threshold=3, clock=clock)


class TestAutoDisablePolicy:
    """Tests for AutoDisablePolicy against storage directly."""

    def test_rejects_zero_threshold(self, storage: InMemoryWebhookStorage) -> None:
        with pytest.raises(ConfigurationError):
            AutoDisablePolicy(storage, threshold=0)

    @pytest.mark.asyncio
    async def test_disables_at_threshold(
        self, policy: AutoDisablePolicy, storage: InMemoryWebhookStorage
    ) -> None:
        webhook = make_webhook()
        await storage.add_webhook(webhook)

        assert not await policy.record_terminal_failure(webhook.id, "HTTP 404")
        assert not await policy.record_terminal_failure(webhook.id, "HTTP 404")
        assert await policy.record_terminal_failure(webhook.id, "HTTP 404")

        stored = await storage.get_webhook(webhook.id)
        assert stored is not None
        assert not stored.is_active
        assert stored.is_auto_disabled
        assert stored.auto_disabled_at == START
        assert stored.auto_disable_reason == "3 consecutive failures; last: HTTP 404"

    @pytest.mark.asyncio
    async def test_success_resets_count(
        self, policy: AutoDisablePolicy, storage: InMemoryWebhookStorage
    ) -> None:
        webhook = make_webhook()
        await storage.add_webhook(webhook)

        await policy.record_terminal_failure(webhook.id, "HTTP 404")
        await policy.record_terminal_failure(webhook.id, "HTTP 404")
        await policy.record_success(webhook.id)
        assert not await policy.record_terminal_failure(webhook.id, "HTTP 404")

        stored = await storage.get_webhook(webhook.id)
        assert stored is not None
        assert stored.consecutive_failures == 1
        assert stored.is_active

    @pytest.mark.asyncio
    async def test_already_inactive_webhook_not_marked(
        self, policy: AutoDisablePolicy, storage: InMemoryWebhookStorage
    ) -> None:
        """An operator-disabled webhook is not turned into an auto-disabled one."""
        webhook = make_webhook(is_active=False, consecutive_failures=5)
        await storage.add_webhook(webhook)
        assert not await policy.record_terminal_failure(webhook.id, "HTTP 500")
        stored = await storage.get_webhook(webhook.id)
        assert stored is not None
        assert not stored.is_auto_disabled

    @pytest.mark.asyncio
    async def test_missing_webhook(self, policy: AutoDisablePolicy) -> None:
        assert not await policy.record_terminal_failure("whk_missing", "HTTP 500")

    @pytest.mark.asyncio
    async def test_re_enable(
        self, policy: AutoDisablePolicy, storage: InMemoryWebhookStorage
    ) -> None:
        webhook = make_webhook()
        await storage.add_webhook(webhook)
        for _ in range(3):
            await policy.record_terminal_failure(webhook.id, "HTTP 404")
        assert [wh.id for wh in await policy.get_auto_disabled()] == [webhook.id]

        assert await policy.re_enable(webhook.id)

        stored = await storage.get_webhook(webhook.id)
        assert stored is not None
        assert stored.is_active
        assert not stored.is_auto_disabled
        assert stored.auto_disable_reason is None
        assert stored.consecutive_failures == 0
        assert await policy.get_auto_disabled() == []

    @pytest.mark.asyncio
    async def test_re_enable_requires_auto_disabled(
        self, policy: AutoDisablePolicy, storage: InMemoryWebhookStorage
    ) -> None:
        webhook = make_webhook(is_active=False)
        await storage.add_webhook(webhook)
        assert not await policy.re_enable(webhook.id)
        assert not await policy.re_enable("whk_missing")


class TestAutoDisableEndToEnd:
    """Tests for auto-disable driven by real deliveries."""

    @pytest.mark.asyncio
    async def test_always_404_endpoint_is_disabled(
        self,
        service_factory: Callable[..., WebhookService],
        endpoint: Endpoint,
    ) -> None:
        """After the threshold, the webhook stops matching and gets no more traffic."""
        service = service_factory(auto_disable_threshold=3)
        endpoint.default = 404
        webhook = await service.create_webhook(
            url="https://hooks.example.com/dead", events=["order.created"]
        )

        for _ in range(3):
            await service.trigger("order.created", {"orderId": 1})
            await service.dispatcher.drain()

        stored = await service.get_webhook(webhook.id)
        assert stored.is_auto_disabled
        assert not stored.is_active
        assert [wh.id for wh in await service.get_auto_disabled()] == [webhook.id]

        result = await service.trigger("order.created", {"orderId": 2})
        await service.dispatcher.drain()
        assert result.matched_count == 0
        assert endpoint.calls == 3

    @pytest.mark.asyncio
    async def test_retryable_failures_count_once_per_delivery(
        self,
        service_factory: Callable[..., WebhookService],
        endpoint: Endpoint,
        clock: ManualClock,
    ) -> None:
        """Only the final outcome of a delivery feeds the counter."""
        service = service_factory(auto_disable_threshold=2)
        endpoint.default = 500
        webhook = await service.create_webhook(
            url="https://hooks.example.com/flaky", events=["order.created"], max_retries=2
        )
        await service.trigger("order.created", {"orderId": 1})
        await service.dispatcher.drain()
        for _ in range(3):
            clock.advance(hours=1)
            await service.process_pending_retries()

        stored = await service.get_webhook(webhook.id)
        assert endpoint.calls == 3
        assert stored.consecutive_failures == 1
        assert stored.is_active

    @pytest.mark.asyncio
    async def test_test_deliveries_never_disable(
        self,
        service_factory: Callable[..., WebhookService],
        endpoint: Endpoint,
    ) -> None:
        service = service_factory(auto_disable_threshold=1)
        endpoint.default = 500
        webhook = await service.create_webhook(
            url="https://hooks.example.com/hook", events=["order.created"]
        )
        for _ in range(3):
            result = await service.test(webhook.id)
            assert not result.success

        stored = await service.get_webhook(webhook.id)
        assert stored.is_active
        assert stored.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_re_enabled_webhook_receives_events_again(
        self,
        service_factory: Callable[..., WebhookService],
        endpoint: Endpoint,
    ) -> None:
        service = service_factory(auto_disable_threshold=1)
        endpoint.script(404)
        webhook = await service.create_webhook(
            url="https://hooks.example.com/hook", events=["order.created"]
        )
        await service.trigger("order.created", {})
        await service.dispatcher.drain()
        assert (await service.get_webhook(webhook.id)).is_auto_disabled

        assert await service.re_enable(webhook.id)
        result = await service.trigger("order.created", {})
        await service.dispatcher.drain()

        assert result.matched_count == 1
        assert endpoint.calls == 2
