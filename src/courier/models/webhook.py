"""Webhook subscription models.

A webhook is a registered subscriber endpoint plus its delivery policy
and signing secret. The subscription is a tagged variant: either every
event (AllEvents) or an explicit non-empty set of event names (EventSet).
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from .base import generate_id

# Well-known event names raised by the surrounding application.
ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
ORDER_PAID = "order.paid"
ORDER_SHIPPED = "order.shipped"
ORDER_DELIVERED = "order.delivered"
ORDER_CANCELLED = "order.cancelled"
ORDER_REFUNDED = "order.refunded"
PRODUCT_CREATED = "product.created"
PRODUCT_UPDATED = "product.updated"
PRODUCT_DELETED = "product.deleted"
STOCK_LOW = "stock.low"
STOCK_OUT = "stock.out"
CUSTOMER_CREATED = "customer.created"
CUSTOMER_UPDATED = "customer.updated"
CART_ABANDONED = "cart.abandoned"
PAYMENT_RECEIVED = "payment.received"
PAYMENT_FAILED = "payment.failed"
REFUND_ISSUED = "refund.issued"
GIFTCARD_ISSUED = "giftcard.issued"
GIFTCARD_REDEEMED = "giftcard.redeemed"
RETURN_REQUESTED = "return.requested"
RETURN_COMPLETED = "return.completed"
TEST_PING = "test.ping"

KNOWN_EVENT_TYPES: list[str] = [
    ORDER_CREATED,
    ORDER_UPDATED,
    ORDER_PAID,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
    PRODUCT_CREATED,
    PRODUCT_UPDATED,
    PRODUCT_DELETED,
    STOCK_LOW,
    STOCK_OUT,
    CUSTOMER_CREATED,
    CUSTOMER_UPDATED,
    CART_ABANDONED,
    PAYMENT_RECEIVED,
    PAYMENT_FAILED,
    REFUND_ISSUED,
    GIFTCARD_ISSUED,
    GIFTCARD_REDEEMED,
    RETURN_REQUESTED,
    RETURN_COMPLETED,
]

WILDCARD = "*"
MAX_EVENT_NAME_LENGTH = 100

HttpMethod = Literal["POST", "PUT", "PATCH"]


class AuthScheme(str, Enum):
    """How deliveries are authenticated to the subscriber.

    The HMAC schemes sign the body. The others only attach a credential
    header, so a subscriber cannot verify the body with them.
    """

    HMAC_SHA256 = "hmac-sha256"
    HMAC_SHA512 = "hmac-sha512"
    API_KEY = "api-key"
    BASIC_AUTH = "basic-auth"
    BEARER_TOKEN = "bearer-token"
    NONE = "none"


# Credential fields carried by a webhook and snapshotted into each delivery.
CREDENTIAL_FIELDS = ("api_key", "basic_auth_username", "basic_auth_password", "bearer_token")


def normalize_event_name(name: str) -> str:
    """Strip and sanity-check an event name."""
    cleaned = name.strip()
    if not cleaned:
        raise ValueError("event name must not be empty")
    if len(cleaned) > MAX_EVENT_NAME_LENGTH:
        raise ValueError(f"event name longer than {MAX_EVENT_NAME_LENGTH} characters")
    return cleaned


class AllEvents(BaseModel):
    """Subscribe to every event type."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["all"] = "all"

    def includes(self, event_type: str) -> bool:
        return True


class EventSet(BaseModel):
    """Subscribe to an explicit, non-empty set of event types."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["events"] = "events"
    events: frozenset[str] = Field(min_length=1, description="Subscribed event names")

    @field_validator("events")
    @classmethod
    def _normalize(cls, value: frozenset[str]) -> frozenset[str]:
        names = frozenset(normalize_event_name(name) for name in value)
        if WILDCARD in names:
            raise ValueError("use AllEvents instead of the '*' wildcard")
        return names

    def includes(self, event_type: str) -> bool:
        return event_type in self.events


Subscription = Annotated[AllEvents | EventSet, Field(discriminator="kind")]


def build_subscription(
    events: Iterable[str] | None = None,
    subscribe_to_all: bool = False,
) -> AllEvents | EventSet:
    """Build a subscription from the flat "events + subscribe-to-all" form.

    A "*" entry in events is treated as subscribe-to-all.

    Raises:
        ValueError: If neither subscribe_to_all nor any event is given.
    """
    names = [name for name in (events or []) if name.strip()]
    if subscribe_to_all or WILDCARD in {name.strip() for name in names}:
        return AllEvents()
    if not names:
        raise ValueError("subscribe to at least one event or to all events")
    return EventSet(events=frozenset(names))


class Webhook(BaseModel):
    """A registered webhook subscription.

    Endpoint fields (url, http_method, content_type, headers) and the secret
    are changed only by explicit operator updates. Delivery processing only
    writes the statistics and auto-disable fields.

    Attributes:
        id: Unique identifier for this webhook.
        store_id: Owning store, or None for a global webhook.
        name: Display name.
        url: HTTP(S) endpoint receiving deliveries.
        http_method: POST, PUT or PATCH.
        content_type: Content-Type of the delivered body.
        headers: Extra static headers sent with every delivery.
        subscription: AllEvents or EventSet.
        secret: Shared secret for payload signatures.
        auth_scheme: Signature or credential-header scheme.
        api_key, basic_auth_username, basic_auth_password, bearer_token:
            Credentials for the header-only schemes.
        is_active: Whether deliveries are attempted.
        timeout_seconds: Per-attempt timeout.
        retry_enabled: Whether retryable failures are retried.
        max_retries: Retries allowed after the initial attempt.
        consecutive_failures: Terminal failures in a row.
        is_auto_disabled: Set when the auto-disable policy deactivated it.
        deleted_at: Soft-delete timestamp.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    store_id: str | None = Field(default=None, description="Owning store (None = global)")
    name: str = Field(default="", max_length=200, description="Display name")
    description: str | None = Field(default=None, description="Human-readable description")

    # Endpoint
    url: HttpUrl = Field(description="HTTP(S) endpoint to receive events")
    http_method: HttpMethod = Field(default="POST", description="HTTP method")
    content_type: str = Field(default="application/json", description="Body content type")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra static headers")

    # Subscription
    subscription: Subscription = Field(default_factory=AllEvents)

    # Security
    secret: str = Field(repr=False, min_length=1, description="Shared signing secret")
    auth_scheme: AuthScheme = Field(default=AuthScheme.HMAC_SHA256)
    api_key: str | None = Field(default=None, repr=False, description="Sent as X-API-Key")
    basic_auth_username: str | None = Field(default=None, repr=False)
    basic_auth_password: str | None = Field(default=None, repr=False)
    bearer_token: str | None = Field(default=None, repr=False)

    # Policy
    is_active: bool = Field(default=True, description="Whether webhook is active")
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Per-attempt timeout")
    retry_enabled: bool = Field(default=True, description="Retry transient failures")
    max_retries: int = Field(default=3, ge=0, le=20, description="Retries after first attempt")

    # Auto-disable
    consecutive_failures: int = Field(default=0, ge=0)
    is_auto_disabled: bool = Field(default=False)
    auto_disabled_at: datetime | None = Field(default=None)
    auto_disable_reason: str | None = Field(default=None)

    # Statistics
    total_deliveries: int = Field(default=0, ge=0)
    successful_deliveries: int = Field(default=0, ge=0)
    failed_deliveries: int = Field(default=0, ge=0)
    last_triggered_at: datetime | None = Field(default=None)
    last_success_at: datetime | None = Field(default=None)
    last_failure_at: datetime | None = Field(default=None)
    last_status_code: int | None = Field(default=None)
    last_error: str | None = Field(default=None)
    average_response_time_ms: float | None = Field(default=None)

    # Lifecycle
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    deleted_at: datetime | None = Field(default=None)

    @field_validator("http_method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def credentials(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in CREDENTIAL_FIELDS}

    @property
    def success_rate(self) -> float:
        """Percentage of successful attempts, 0 when nothing was sent yet."""
        if self.total_deliveries == 0:
            return 0.0
        return round(self.successful_deliveries / self.total_deliveries * 100, 2)

    @property
    def is_healthy(self) -> bool:
        return self.is_active and not self.is_auto_disabled and self.consecutive_failures < 3

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this webhook subscribes to the given event type."""
        return self.subscription.includes(event_type)

    def matches(self, event_type: str, store_id: str | None) -> bool:
        """Dispatch rule: active, subscribed, and global or in the event's store."""
        return (
            self.is_active
            and not self.is_deleted
            and self.subscribes_to(event_type)
            and (self.store_id is None or self.store_id == store_id)
        )


__all__ = [
    "CREDENTIAL_FIELDS",
    "KNOWN_EVENT_TYPES",
    "TEST_PING",
    "WILDCARD",
    "AllEvents",
    "AuthScheme",
    "EventSet",
    "HttpMethod",
    "Subscription",
    "Webhook",
    "build_subscription",
    "normalize_event_name",
]
