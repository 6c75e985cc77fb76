"""Storage collaborators for Courier.

Example:
    ```python
    from courier.storage import create_storage

    async with create_storage() as storage:
        await storage.add_webhook(webhook)
    ```
"""

from __future__ import annotations

from courier.config import Settings, settings

from .base import LIVE_STATES, WebhookStorage
from .memory import InMemoryWebhookStorage
from .qdrant import QdrantWebhookStorage


def create_storage(config: Settings | None = None) -> WebhookStorage:
    """Build the backend selected by ``storage_backend``."""
    config = config or settings
    if config.storage_backend == "qdrant":
        return QdrantWebhookStorage(
            url=config.qdrant_url,
            api_key=config.qdrant_api_key,
            prefix=config.collection_prefix,
        )
    return InMemoryWebhookStorage()


__all__ = [
    "LIVE_STATES",
    "InMemoryWebhookStorage",
    "QdrantWebhookStorage",
    "WebhookStorage",
    "create_storage",
]
