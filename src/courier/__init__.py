"""Courier: signed, retried webhook delivery.

Delivers application events (order created, gift card redeemed, ...) to
registered HTTP endpoints with HMAC signatures, at-least-once retries with
exponential backoff, and automatic disabling of endpoints that keep failing.
Raising an event never waits on a subscriber.

Quick Start:
    from courier import WebhookService

    async with WebhookService.create() as courier:
        webhook = await courier.create_webhook(
            url="https://example.com/hooks",
            name="Orders",
            events=["order.created"],
        )
        await courier.trigger("order.created", {"orderId": 42})

Delivery States:
    pending -> in_flight -> succeeded
                         -> pending (retry scheduled)
                         -> failed_terminal
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    CourierError,
    NotFoundError,
    SignatureError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    bound_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    AllEvents,
    AuthScheme,
    DeliveryAttempt,
    DeliveryResult,
    DeliveryState,
    EventSet,
    TriggerResult,
    Webhook,
    WebhookDelivery,
    WebhookEvent,
    WebhookStats,
)

# Service
from .service import WebhookService

# Signing
from .signing import Signer, generate_secret

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "ConfigurationError",
    "CourierError",
    "NotFoundError",
    "SignatureError",
    "StorageError",
    "ValidationError",
    # Logging
    "bind_context",
    "bound_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Models
    "AllEvents",
    "AuthScheme",
    "DeliveryAttempt",
    "DeliveryResult",
    "DeliveryState",
    "EventSet",
    "TriggerResult",
    "Webhook",
    "WebhookDelivery",
    "WebhookEvent",
    "WebhookStats",
    # Service
    "WebhookService",
    # Signing
    "Signer",
    "generate_secret",
]
