"""Domain models for Courier.

Webhook Types:
    - Webhook: Subscription definition with endpoint, secret and policy
    - AllEvents / EventSet: Tagged subscription variant
    - AuthScheme: Signature scheme

Delivery Types:
    - WebhookDelivery: One event sent to one webhook, with its state machine
    - DeliveryAttempt: Immutable delivery log record
    - AttemptOutcome: Classified result of one HTTP attempt
    - DeliveryResult, TriggerResult, WebhookStats: Operation results

Event Types:
    - WebhookEvent: Wire envelope
"""

from .base import generate_id, truncate, utc_now
from .delivery import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryResult,
    DeliveryState,
    InvalidTransition,
    OutcomeStatus,
    TriggerResult,
    WebhookDelivery,
    WebhookStats,
)
from .event import WebhookEvent
from .webhook import (
    CREDENTIAL_FIELDS,
    KNOWN_EVENT_TYPES,
    TEST_PING,
    WILDCARD,
    AllEvents,
    AuthScheme,
    EventSet,
    HttpMethod,
    Subscription,
    Webhook,
    build_subscription,
    normalize_event_name,
)

__all__ = [
    # Helpers
    "generate_id",
    "truncate",
    "utc_now",
    # Webhooks
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
    # Deliveries
    "AttemptOutcome",
    "DeliveryAttempt",
    "DeliveryResult",
    "DeliveryState",
    "InvalidTransition",
    "OutcomeStatus",
    "TriggerResult",
    "WebhookDelivery",
    "WebhookStats",
    # Events
    "WebhookEvent",
]
