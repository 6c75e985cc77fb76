"""Request and response schemas for the Courier API.

Secrets never appear in responses except once, when a webhook is created.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from courier.models import (
    AllEvents,
    AuthScheme,
    DeliveryState,
    Webhook,
    WebhookDelivery,
)


class CreateWebhookRequest(BaseModel):
    """Request body for registering a webhook.

    Example:
        ```json
        {
            "name": "Order sync",
            "url": "https://example.com/hooks/orders",
            "store_id": "st_1",
            "events": ["order.created", "order.paid"]
        }
        ```
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200, description="Display name")
    description: str | None = Field(default=None)
    url: str = Field(min_length=1, description="HTTP(S) endpoint")
    store_id: str | None = Field(default=None, description="Owning store (omit for global)")
    is_active: bool = Field(default=True)
    events: list[str] | None = Field(default=None, description="Subscribed event names")
    subscribe_to_all: bool = Field(default=False, description="Receive every event")
    http_method: str = Field(default="POST", description="POST, PUT or PATCH")
    content_type: str = Field(default="application/json")
    headers: dict[str, str] | None = Field(default=None, description="Extra static headers")
    timeout_seconds: int | None = Field(default=None, description="Per-attempt timeout")
    retry_enabled: bool = Field(default=True)
    max_retries: int | None = Field(default=None, description="Retries after the first attempt")
    auth_scheme: AuthScheme = Field(default=AuthScheme.HMAC_SHA256)
    secret: str | None = Field(default=None, description="Signing secret (generated if omitted)")
    api_key: str | None = Field(default=None, description="Sent as X-API-Key (api-key scheme)")
    basic_auth_username: str | None = Field(default=None)
    basic_auth_password: str | None = Field(default=None)
    bearer_token: str | None = Field(default=None, description="bearer-token scheme")


class UpdateWebhookRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=200)
    description: str | None = None
    url: str | None = None
    is_active: bool | None = None
    events: list[str] | None = None
    subscribe_to_all: bool | None = None
    http_method: str | None = None
    content_type: str | None = None
    headers: dict[str, str] | None = None
    timeout_seconds: int | None = None
    retry_enabled: bool | None = None
    max_retries: int | None = None
    auth_scheme: AuthScheme | None = None
    secret: str | None = Field(default=None, min_length=1)
    api_key: str | None = None
    basic_auth_username: str | None = None
    basic_auth_password: str | None = None
    bearer_token: str | None = None


class TriggerRequest(BaseModel):
    """Raise an event."""

    model_config = ConfigDict(extra="forbid")

    event_type: str = Field(min_length=1, description="Event name, e.g. order.created")
    payload: Any = Field(default_factory=dict, description="Event data")
    store_id: str | None = Field(default=None)


class VerifySignatureRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payload: str
    signature: str
    secret: str
    auth_scheme: AuthScheme = Field(default=AuthScheme.HMAC_SHA256)


class WebhookResponse(BaseModel):
    """Webhook as returned by the API (secret and credentials omitted)."""

    id: str
    store_id: str | None
    name: str
    description: str | None
    url: str
    http_method: str
    content_type: str
    headers: dict[str, str]
    subscribe_to_all: bool
    events: list[str]
    auth_scheme: AuthScheme
    is_active: bool
    timeout_seconds: int
    retry_enabled: bool
    max_retries: int
    consecutive_failures: int
    is_auto_disabled: bool
    auto_disabled_at: datetime | None
    auto_disable_reason: str | None
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float
    last_triggered_at: datetime | None
    last_status_code: int | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_webhook(cls, webhook: Webhook) -> WebhookResponse:
        subscription = webhook.subscription
        all_events = isinstance(subscription, AllEvents)
        return cls(
            id=webhook.id,
            store_id=webhook.store_id,
            name=webhook.name,
            description=webhook.description,
            url=str(webhook.url),
            http_method=webhook.http_method,
            content_type=webhook.content_type,
            headers=webhook.headers,
            subscribe_to_all=all_events,
            events=[] if all_events else sorted(subscription.events),
            auth_scheme=webhook.auth_scheme,
            is_active=webhook.is_active,
            timeout_seconds=webhook.timeout_seconds,
            retry_enabled=webhook.retry_enabled,
            max_retries=webhook.max_retries,
            consecutive_failures=webhook.consecutive_failures,
            is_auto_disabled=webhook.is_auto_disabled,
            auto_disabled_at=webhook.auto_disabled_at,
            auto_disable_reason=webhook.auto_disable_reason,
            total_deliveries=webhook.total_deliveries,
            successful_deliveries=webhook.successful_deliveries,
            failed_deliveries=webhook.failed_deliveries,
            success_rate=webhook.success_rate,
            last_triggered_at=webhook.last_triggered_at,
            last_status_code=webhook.last_status_code,
            created_at=webhook.created_at,
            updated_at=webhook.updated_at,
        )


class WebhookCreatedResponse(WebhookResponse):
    """Creation response; the only place the secret is returned."""

    secret: str

    @classmethod
    def from_created(cls, webhook: Webhook) -> WebhookCreatedResponse:
        base = WebhookResponse.from_webhook(webhook)
        return cls(**base.model_dump(), secret=webhook.secret)


class DeliveryResponse(BaseModel):
    """Delivery as returned by the API (secret snapshot omitted)."""

    id: str
    webhook_id: str
    store_id: str | None
    event_type: str
    payload: str
    target_url: str
    state: DeliveryState
    attempt_count: int
    last_attempt_at: datetime | None
    next_attempt_at: datetime | None
    last_status_code: int | None
    last_error: str | None
    response_snippet: str | None
    is_test: bool
    created_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_delivery(cls, delivery: WebhookDelivery) -> DeliveryResponse:
        return cls.model_validate(
            delivery.model_dump(include=set(cls.model_fields))
        )


class SecretResponse(BaseModel):
    secret: str


class SignatureVerificationResponse(BaseModel):
    is_valid: bool


class ReEnableResponse(BaseModel):
    webhook_id: str
    re_enabled: bool


class ProcessRetriesResponse(BaseModel):
    processed_count: int


class ReclaimResponse(BaseModel):
    released_count: int


class CleanupResponse(BaseModel):
    deleted_count: int
    days_to_keep: int


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    version: str
    storage_connected: bool
