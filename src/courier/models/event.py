"""Event envelope sent to webhook endpoints."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .webhook import normalize_event_name


class WebhookEvent(BaseModel):
    """Transient event envelope.

    Serialized with camelCase keys; storeId is omitted for global events:

        {"eventType": "order.created", "storeId": "st_1",
         "timestamp": "2026-01-01T00:00:00Z", "data": {...}}
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    event_type: str = Field(alias="eventType", description="Event name")
    store_id: str | None = Field(default=None, alias="storeId", description="Store scope")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event was raised",
    )
    data: Any = Field(default_factory=dict, description="Event-specific payload")

    @field_validator("event_type")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return normalize_event_name(value)

    def to_json(self) -> str:
        """Serialize to the wire form. Raises on non-serializable data."""
        exclude = {"store_id"} if self.store_id is None else None
        return self.model_dump_json(by_alias=True, exclude=exclude)
