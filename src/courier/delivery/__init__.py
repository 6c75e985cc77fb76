"""Delivery pipeline: executor, retry scheduling, auto-disable and dispatch."""

from .auto_disable import AutoDisablePolicy
from .dispatcher import WebhookDispatcher
from .executor import SUBSCRIBER_DISABLED, DeliveryExecutor, classify_status
from .retry import RetryPolicy, RetryScheduler
from .sweeper import RetrySweeper

__all__ = [
    "SUBSCRIBER_DISABLED",
    "AutoDisablePolicy",
    "DeliveryExecutor",
    "RetryPolicy",
    "RetryScheduler",
    "RetrySweeper",
    "WebhookDispatcher",
    "classify_status",
]
