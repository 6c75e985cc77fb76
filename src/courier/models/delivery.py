"""Delivery tracking models.

A WebhookDelivery is one event sent to one webhook. It carries a snapshot
of the endpoint and secret taken when the event matched, so later webhook
edits never rewrite delivery history. Its state only changes through the
transition methods below:

    pending -> in_flight -> succeeded
                         -> failed_retryable -> pending
                         -> failed_terminal

A DeliveryAttempt is the immutable log record of a single HTTP attempt.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id
from .webhook import CREDENTIAL_FIELDS, AuthScheme, HttpMethod


class DeliveryState(str, Enum):
    """Lifecycle state of a delivery."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.PENDING: frozenset({DeliveryState.IN_FLIGHT}),
    DeliveryState.IN_FLIGHT: frozenset(
        {
            DeliveryState.SUCCEEDED,
            DeliveryState.FAILED_RETRYABLE,
            DeliveryState.FAILED_TERMINAL,
            DeliveryState.PENDING,  # reclaimed after a crashed worker
        }
    ),
    DeliveryState.FAILED_RETRYABLE: frozenset(
        {DeliveryState.PENDING, DeliveryState.FAILED_TERMINAL}
    ),
    DeliveryState.FAILED_TERMINAL: frozenset({DeliveryState.IN_FLIGHT}),  # manual retry
    DeliveryState.SUCCEEDED: frozenset(),
}


class InvalidTransition(ValueError):
    """Raised when a delivery is moved along an edge the state machine lacks."""


class OutcomeStatus(str, Enum):
    """Classification of a single HTTP attempt."""

    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


class AttemptOutcome(BaseModel):
    """Classified result of one delivery attempt.

    Attributes:
        status: succeeded, failed_retryable or failed_terminal.
        status_code: HTTP status, if a response was received.
        response_snippet: Truncated response body.
        error: Error message for failures.
        error_type: Short failure category (HttpError, Timeout, ConnectionError, ...).
        duration_ms: Wall time spent on the attempt.
        counts_as_failure: False for outcomes that are not the subscriber's fault
            (for example a webhook disabled while the delivery was queued).
    """

    model_config = ConfigDict(extra="forbid")

    status: OutcomeStatus
    status_code: int | None = None
    response_snippet: str | None = None
    error: str | None = None
    error_type: str | None = None
    duration_ms: int = 0
    counts_as_failure: bool = True

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    @property
    def retryable(self) -> bool:
        return self.status is OutcomeStatus.FAILED_RETRYABLE


class WebhookDelivery(BaseModel):
    """One event delivered (or being delivered) to one webhook.

    Attributes:
        id: Unique identifier for this delivery.
        webhook_id: Owning webhook.
        store_id: Store scope of the triggering event.
        event_type: Event name.
        payload: Exact serialized envelope sent as the request body.
        target_url: Endpoint snapshot taken at creation.
        secret: Secret snapshot taken at creation.
        api_key, basic_auth_username, basic_auth_password, bearer_token:
            Credential snapshots for the header-only schemes.
        state: Current state.
        attempt_count: Retries scheduled so far (0 before the first retry).
        next_attempt_at: Earliest time the sweep may attempt it.
        claimed_at: When the current in-flight claim was taken.
        is_test: Synthetic delivery created by a webhook test.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    webhook_id: str = Field(description="ID of the webhook")
    store_id: str | None = Field(default=None, description="Store scope of the event")
    event_type: str = Field(description="Event name")
    payload: str = Field(description="Serialized event envelope")

    # Snapshot of the webhook at creation time
    target_url: str = Field(description="Endpoint used for this delivery")
    secret: str = Field(repr=False, description="Secret used for this delivery")
    auth_scheme: AuthScheme = Field(default=AuthScheme.HMAC_SHA256)
    api_key: str | None = Field(default=None, repr=False)
    basic_auth_username: str | None = Field(default=None, repr=False)
    basic_auth_password: str | None = Field(default=None, repr=False)
    bearer_token: str | None = Field(default=None, repr=False)
    http_method: HttpMethod = Field(default="POST")
    content_type: str = Field(default="application/json")
    headers: dict[str, str] = Field(default_factory=dict)

    state: DeliveryState = Field(default=DeliveryState.PENDING)
    attempt_count: int = Field(default=0, ge=0, description="Retries scheduled so far")
    last_attempt_at: datetime | None = Field(default=None)
    next_attempt_at: datetime | None = Field(default=None)
    last_status_code: int | None = Field(default=None)
    last_error: str | None = Field(default=None)
    response_snippet: str | None = Field(default=None)
    claimed_at: datetime | None = Field(default=None)
    is_test: bool = Field(default=False)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = Field(default=None)

    @property
    def credentials(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in CREDENTIAL_FIELDS}

    @property
    def is_final(self) -> bool:
        return self.state in (DeliveryState.SUCCEEDED, DeliveryState.FAILED_TERMINAL)

    def _move(self, target: DeliveryState, now: datetime) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"delivery {self.id}: {self.state.value} -> {target.value} not allowed"
            )
        self.state = target
        self.updated_at = now

    def _record(self, outcome: AttemptOutcome, now: datetime) -> None:
        self.last_attempt_at = now
        self.last_status_code = outcome.status_code
        self.last_error = outcome.error
        self.response_snippet = outcome.response_snippet

    def mark_in_flight(self, now: datetime) -> WebhookDelivery:
        """Claim the delivery for an attempt."""
        self._move(DeliveryState.IN_FLIGHT, now)
        self.claimed_at = now
        self.completed_at = None
        return self

    def mark_succeeded(self, outcome: AttemptOutcome, now: datetime) -> WebhookDelivery:
        """Record a 2xx response."""
        self._record(outcome, now)
        self._move(DeliveryState.SUCCEEDED, now)
        self.completed_at = now
        self.next_attempt_at = None
        self.claimed_at = None
        return self

    def mark_terminal(
        self,
        now: datetime,
        outcome: AttemptOutcome | None = None,
        error: str | None = None,
    ) -> WebhookDelivery:
        """Record a failure that will not be retried automatically."""
        if outcome is not None:
            self._record(outcome, now)
        if error is not None:
            self.last_error = error
        self._move(DeliveryState.FAILED_TERMINAL, now)
        self.completed_at = now
        self.next_attempt_at = None
        self.claimed_at = None
        return self

    def mark_retry_scheduled(
        self, outcome: AttemptOutcome, next_attempt_at: datetime, now: datetime
    ) -> WebhookDelivery:
        """Record a retryable failure and put the delivery back in the queue."""
        self._record(outcome, now)
        self._move(DeliveryState.FAILED_RETRYABLE, now)
        self._move(DeliveryState.PENDING, now)
        self.attempt_count += 1
        self.next_attempt_at = next_attempt_at
        self.claimed_at = None
        return self

    def release(self, now: datetime) -> WebhookDelivery:
        """Return an abandoned in-flight delivery to the queue."""
        self._move(DeliveryState.PENDING, now)
        self.next_attempt_at = now
        self.claimed_at = None
        return self


class DeliveryAttempt(BaseModel):
    """Immutable delivery log record for one HTTP attempt.

    Attributes:
        attempt_number: 0 for the first attempt, then 1, 2, ... for retries.
        request_headers: Headers sent, with the signature value redacted.
        response_snippet: Response body truncated to the configured bound.
        outcome: Classification of the attempt.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("att"))
    delivery_id: str
    webhook_id: str
    attempt_number: int = Field(ge=0)
    request_method: str
    request_url: str
    request_headers: dict[str, str] = Field(default_factory=dict)
    status_code: int | None = None
    response_snippet: str | None = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    outcome: OutcomeStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int = Field(ge=0)


class DeliveryResult(BaseModel):
    """Outcome of a synchronous delivery (test or manual retry)."""

    model_config = ConfigDict(extra="forbid")

    webhook_id: str | None = None
    delivery_id: str | None = None
    success: bool
    state: DeliveryState | None = None
    status_code: int | None = None
    duration_ms: int = 0
    error: str | None = None
    response_snippet: str | None = None


class TriggerResult(BaseModel):
    """Result of raising an event."""

    model_config = ConfigDict(extra="forbid")

    event_type: str
    matched_count: int = Field(ge=0)
    delivery_ids: list[str] = Field(default_factory=list)


class WebhookStats(BaseModel):
    """Delivery statistics for one webhook."""

    model_config = ConfigDict(extra="forbid")

    webhook_id: str
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float
    consecutive_failures: int
    average_response_time_ms: float | None = None
    last_triggered_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_status_code: int | None = None
    last_error: str | None = None
    is_healthy: bool


__all__ = [
    "AttemptOutcome",
    "DeliveryAttempt",
    "DeliveryResult",
    "DeliveryState",
    "InvalidTransition",
    "OutcomeStatus",
    "TriggerResult",
    "WebhookDelivery",
    "WebhookStats",
]
