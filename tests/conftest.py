"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import structlog

from courier.config import Settings
from courier.models import DeliveryAttempt, EventSet, Webhook, WebhookDelivery
from courier.service import WebhookService
from courier.storage import InMemoryWebhookStorage

START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
SECRET = "whsec_test_secret_value"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


class FlakyStorage(InMemoryWebhookStorage):
    """In-memory storage whose next calls of chosen methods raise.

    `failures` maps a method name to how many more calls should fail.
    The logging context seen by each add_attempt call is kept in `contexts`.
    """

    def __init__(self, **failures: int) -> None:
        super().__init__()
        self.failures = dict(failures)
        self.contexts: list[dict[str, object]] = []

    def _fail(self, name: str, message: str) -> None:
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            raise RuntimeError(message)

    async def get_webhook(self, webhook_id: str, include_deleted: bool = False) -> Webhook | None:
        self._fail("get_webhook", "webhook store unavailable")
        return await super().get_webhook(webhook_id, include_deleted=include_deleted)

    async def save_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        self._fail("save_delivery", "delivery store unavailable")
        return await super().save_delivery(delivery)

    async def add_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        self.contexts.append(structlog.contextvars.get_contextvars())
        self._fail("add_attempt", "attempt log unavailable")
        return await super().add_attempt(attempt)


Reply = int | httpx.Response | Exception


class Endpoint:
    """Scripted subscriber endpoint for httpx.MockTransport.

    Replies are consumed in order; once exhausted every request gets
    `default`. An int reply is a status code, an exception is raised
    as a transport error.
    """

    def __init__(self, replies: list[Reply] | None = None, default: Reply = 200) -> None:
        self.replies = list(replies or [])
        self.default = default
        self.requests: list[httpx.Request] = []

    def script(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(reply, text=f"status {reply}")

    @property
    def calls(self) -> int:
        return len(self.requests)


def make_webhook(**overrides: object) -> Webhook:
    """Webhook with test defaults."""
    data: dict[str, object] = {
        "url": "https://hooks.example.com/orders",
        "name": "Orders",
        "secret": SECRET,
        "subscription": EventSet(events=frozenset({"order.created", "order.paid"})),
        "created_at": START,
        "updated_at": START,
    }
    data.update(overrides)
    return Webhook(**data)  # type: ignore[arg-type]


def make_delivery(webhook: Webhook, **overrides: object) -> WebhookDelivery:
    """Pending delivery snapshotting the given webhook."""
    data: dict[str, object] = {
        "webhook_id": webhook.id,
        "store_id": webhook.store_id,
        "event_type": "order.created",
        "payload": '{"eventType":"order.created","data":{"orderId":1}}',
        "target_url": str(webhook.url),
        "secret": webhook.secret,
        "auth_scheme": webhook.auth_scheme,
        **webhook.credentials,
        "next_attempt_at": START,
        "created_at": START,
        "updated_at": START,
    }
    data.update(overrides)
    return WebhookDelivery(**data)  # type: ignore[arg-type]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def storage() -> InMemoryWebhookStorage:
    return InMemoryWebhookStorage()


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint()


@pytest.fixture
async def http_client(endpoint: Endpoint) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler)) as client:
        yield client


@pytest.fixture
def test_settings() -> Settings:
    """Deterministic settings: no jitter, no background sweep."""
    return Settings(
        env="test",
        storage_backend="memory",
        retry_base_delay_seconds=60.0,
        retry_max_delay_seconds=3600.0,
        retry_jitter=False,
        retry_sweep_interval_seconds=0,
        auto_disable_threshold=10,
        deliver_immediately=True,
    )


@pytest.fixture
def service_factory(
    storage: InMemoryWebhookStorage,
    clock: ManualClock,
    http_client: httpx.AsyncClient,
    test_settings: Settings,
) -> Callable[..., WebhookService]:
    """Build a WebhookService over the shared fixtures, with settings overrides."""

    def build(**overrides: object) -> WebhookService:
        config = test_settings.model_copy(update=overrides) if overrides else test_settings
        return WebhookService(
            storage=storage, settings=config, clock=clock, http_client=http_client
        )

    return build


@pytest.fixture
async def service(
    service_factory: Callable[..., WebhookService],
) -> AsyncIterator[WebhookService]:
    svc = service_factory()
    await svc.initialize()
    yield svc
    await svc.dispatcher.drain()




@pytest.fixture
def flaky_storage() -> FlakyStorage:
    return FlakyStorage()


@pytest.fixture
async def flaky_service(
    flaky_storage: FlakyStorage,
    clock: ManualClock,
    http_client: httpx.AsyncClient,
    test_settings: Settings,
) -> AsyncIterator[WebhookService]:
    """Service over FlakyStorage; deliveries run only when swept or retried."""
    svc = WebhookService(
        storage=flaky_storage,
        settings=test_settings.model_copy(update={"deliver_immediately": False}),
        clock=clock,
        http_client=http_client,
    )
    await svc.initialize()
    yield svc
    await svc.dispatcher.drain()
