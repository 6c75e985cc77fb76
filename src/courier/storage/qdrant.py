"""Qdrant storage backend.

Webhooks, deliveries and attempts live in three payload-only collections.
Each point carries a one-dimensional zero vector (no semantic search is
needed) and the model dumped as JSON. Timestamps used in range filters are
duplicated as float epoch seconds (``*_ts`` fields), which are stripped
again when a payload is turned back into a model.

Qdrant has no compare-and-set, so conditional claims and webhook
read-modify-write updates are serialized by process-local locks. Run one
sweeping process per collection prefix.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Collection
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

from courier.config import settings
from courier.exceptions import StorageError
from courier.models import DeliveryAttempt, DeliveryState, Webhook, WebhookDelivery

from .base import LIVE_STATES, WebhookMutator, WebhookStorage
from .retry import qdrant_retry

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", Webhook, WebhookDelivery, DeliveryAttempt)

COLLECTION_NAMES = {
    "webhooks": "webhooks",
    "deliveries": "webhook_deliveries",
    "attempts": "webhook_attempts",
}

# Payload-only collections still need a vector; one dimension is enough.
VECTOR_SIZE = 1
_ZERO_VECTOR = [0.0] * VECTOR_SIZE

# Fields derived from timestamps for range filtering; never part of the models.
_TIMESTAMP_FIELDS = {
    "created_at": "created_ts",
    "next_attempt_at": "next_attempt_ts",
    "claimed_at": "claimed_ts",
    "started_at": "started_ts",
}

SCROLL_PAGE_SIZE = 256


class QdrantWebhookStorage(WebhookStorage):
    """WebhookStorage backed by Qdrant.

    Example:
        ```python
        async with QdrantWebhookStorage(url="http://localhost:6333") as storage:
            await storage.add_webhook(webhook)
        ```

    Pass ``location=":memory:"`` to run against qdrant-client's local mode.
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
        location: str | None = None,
    ) -> None:
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._location = location
        self._client: AsyncQdrantClient | None = None
        self._webhook_lock = asyncio.Lock()
        self._claim_lock = asyncio.Lock()

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise StorageError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        if self._client is not None:
            return
        if self._location is not None:
            self._client = AsyncQdrantClient(location=self._location)
        else:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # -- helpers ------------------------------------------------------------

    def _collection_name(self, kind: str) -> str:
        return f"{self._prefix}_{COLLECTION_NAMES[kind]}"

    @staticmethod
    def _key_to_point_id(key: str) -> str:
        """Deterministic UUID-format point ID for a record ID."""
        h = hashlib.sha256(key.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    async def _ensure_collections(self) -> None:
        existing = {c.name for c in (await self.client.get_collections()).collections}
        for kind in COLLECTION_NAMES:
            name = self._collection_name(kind)
            if name in existing:
                continue
            await self.client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(
                    size=VECTOR_SIZE,
                    distance=models.Distance.DOT,
                ),
            )
            await self._create_indexes(kind, name)
            logger.info("Created Qdrant collection %s", name)

    async def _create_indexes(self, kind: str, collection_name: str) -> None:
        keyword_fields: list[str] = []
        float_fields: list[str] = []
        if kind == "webhooks":
            keyword_fields = ["store_id"]
        elif kind == "deliveries":
            keyword_fields = ["webhook_id", "state"]
            float_fields = ["created_ts", "next_attempt_ts", "claimed_ts"]
        elif kind == "attempts":
            keyword_fields = ["delivery_id"]
        for field in keyword_fields:
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field,
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
        for field in float_fields:
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field,
                field_schema=models.PayloadSchemaType.FLOAT,
            )

    @staticmethod
    def _to_payload(record: BaseModel) -> dict[str, Any]:
        data = record.model_dump(mode="json")
        for field, ts_field in _TIMESTAMP_FIELDS.items():
            value = getattr(record, field, None)
            if isinstance(value, datetime):
                data[ts_field] = value.timestamp()
        return data

    @staticmethod
    def _from_payload(payload: dict[str, Any], model: type[ModelT]) -> ModelT:
        data = dict(payload)
        for ts_field in _TIMESTAMP_FIELDS.values():
            data.pop(ts_field, None)
        return model.model_validate(data)

    @qdrant_retry
    async def _upsert(self, kind: str, record_id: str, record: BaseModel) -> None:
        await self.client.upsert(
            collection_name=self._collection_name(kind),
            points=[
                models.PointStruct(
                    id=self._key_to_point_id(record_id),
                    vector=_ZERO_VECTOR,
                    payload=self._to_payload(record),
                )
            ],
        )

    @qdrant_retry
    async def _retrieve(self, kind: str, record_id: str) -> dict[str, Any] | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name(kind),
            ids=[self._key_to_point_id(record_id)],
            with_payload=True,
        )
        if not results:
            return None
        return results[0].payload

    @qdrant_retry
    async def _scroll_page(
        self,
        kind: str,
        scroll_filter: models.Filter | None,
        offset: Any,
        limit: int,
    ) -> tuple[list[models.Record], Any]:
        return await self.client.scroll(
            collection_name=self._collection_name(kind),
            scroll_filter=scroll_filter,
            limit=limit,
            offset=offset,
            with_payload=True,
        )

    async def _scroll_all(
        self, kind: str, scroll_filter: models.Filter | None = None
    ) -> list[dict[str, Any]]:
        payloads: list[dict[str, Any]] = []
        offset = None
        while True:
            records, offset = await self._scroll_page(
                kind, scroll_filter, offset, SCROLL_PAGE_SIZE
            )
            payloads.extend(r.payload for r in records if r.payload is not None)
            if offset is None:
                return payloads

    @qdrant_retry
    async def _delete(
        self, kind: str, selector: models.PointIdsList | models.FilterSelector
    ) -> None:
        await self.client.delete(
            collection_name=self._collection_name(kind),
            points_selector=selector,
        )

    # -- webhooks -----------------------------------------------------------

    async def add_webhook(self, webhook: Webhook) -> Webhook:
        await self._upsert("webhooks", webhook.id, webhook)
        return webhook

    async def get_webhook(
        self, webhook_id: str, include_deleted: bool = False
    ) -> Webhook | None:
        payload = await self._retrieve("webhooks", webhook_id)
        if payload is None:
            return None
        webhook = self._from_payload(payload, Webhook)
        if webhook.is_deleted and not include_deleted:
            return None
        return webhook

    async def list_webhooks(self, include_deleted: bool = False) -> list[Webhook]:
        webhooks = [
            self._from_payload(payload, Webhook)
            for payload in await self._scroll_all("webhooks")
        ]
        webhooks = [wh for wh in webhooks if include_deleted or not wh.is_deleted]
        webhooks.sort(key=lambda wh: wh.created_at)
        return webhooks

    async def find_matching_webhooks(
        self, event_type: str, store_id: str | None
    ) -> list[Webhook]:
        # Store scope and subscription are checked on the model.
        scroll_filter = models.Filter(
            must=[models.FieldCondition(key="is_active", match=models.MatchValue(value=True))]
        )
        webhooks = [
            self._from_payload(payload, Webhook)
            for payload in await self._scroll_all("webhooks", scroll_filter)
        ]
        return [wh for wh in webhooks if wh.matches(event_type, store_id)]

    async def update_webhook_with(
        self, webhook_id: str, mutate: WebhookMutator
    ) -> Webhook | None:
        async with self._webhook_lock:
            payload = await self._retrieve("webhooks", webhook_id)
            if payload is None:
                return None
            current = self._from_payload(payload, Webhook)
            updates = mutate(current.model_copy(deep=True))
            updated = Webhook.model_validate({**current.model_dump(), **updates})
            await self._upsert("webhooks", webhook_id, updated)
            return updated

    # -- deliveries ---------------------------------------------------------

    async def add_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        await self._upsert("deliveries", delivery.id, delivery)
        return delivery

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        payload = await self._retrieve("deliveries", delivery_id)
        if payload is None:
            return None
        return self._from_payload(payload, WebhookDelivery)

    async def save_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self._claim_lock:
            await self._upsert("deliveries", delivery.id, delivery)
        return delivery

    async def claim_delivery(
        self,
        delivery_id: str,
        *,
        now: datetime,
        from_states: Collection[DeliveryState] = (DeliveryState.PENDING,),
        due_at: datetime | None = None,
    ) -> WebhookDelivery | None:
        async with self._claim_lock:
            current = await self.get_delivery(delivery_id)
            if current is None or current.state not in from_states:
                return None
            if (
                due_at is not None
                and current.next_attempt_at is not None
                and current.next_attempt_at > due_at
            ):
                return None
            current.mark_in_flight(now)
            await self._upsert("deliveries", delivery_id, current)
            return current

    async def release_delivery(
        self, delivery_id: str, *, claimed_at: datetime | None, now: datetime
    ) -> WebhookDelivery | None:
        async with self._claim_lock:
            current = await self.get_delivery(delivery_id)
            if (
                current is None
                or current.state is not DeliveryState.IN_FLIGHT
                or current.claimed_at != claimed_at
            ):
                return None
            current.release(now)
            await self._upsert("deliveries", delivery_id, current)
            return current

    async def list_due_deliveries(
        self, now: datetime, limit: int = 100
    ) -> list[WebhookDelivery]:
        scroll_filter = models.Filter(
            must=[
                models.FieldCondition(
                    key="state", match=models.MatchValue(value=DeliveryState.PENDING.value)
                ),
                models.FieldCondition(
                    key="next_attempt_ts", range=models.Range(lte=now.timestamp())
                ),
            ]
        )
        due = [
            self._from_payload(payload, WebhookDelivery)
            for payload in await self._scroll_all("deliveries", scroll_filter)
        ]
        due.sort(key=lambda d: d.next_attempt_at or d.created_at)
        return due[:limit]

    async def list_deliveries(
        self, webhook_id: str, skip: int = 0, take: int = 50
    ) -> list[WebhookDelivery]:
        scroll_filter = models.Filter(
            must=[
                models.FieldCondition(key="webhook_id", match=models.MatchValue(value=webhook_id))
            ]
        )
        deliveries = [
            self._from_payload(payload, WebhookDelivery)
            for payload in await self._scroll_all("deliveries", scroll_filter)
        ]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[skip : skip + take]

    async def list_stuck_deliveries(self, claimed_before: datetime) -> list[WebhookDelivery]:
        scroll_filter = models.Filter(
            must=[
                models.FieldCondition(
                    key="state", match=models.MatchValue(value=DeliveryState.IN_FLIGHT.value)
                ),
                models.FieldCondition(
                    key="claimed_ts", range=models.Range(lt=claimed_before.timestamp())
                ),
            ]
        )
        return [
            self._from_payload(payload, WebhookDelivery)
            for payload in await self._scroll_all("deliveries", scroll_filter)
        ]

    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        scroll_filter = models.Filter(
            must=[
                models.FieldCondition(key="created_ts", range=models.Range(lt=cutoff.timestamp()))
            ],
            must_not=[
                models.FieldCondition(
                    key="state",
                    match=models.MatchAny(any=[state.value for state in LIVE_STATES]),
                )
            ],
        )
        doomed = [payload["id"] for payload in await self._scroll_all("deliveries", scroll_filter)]
        if not doomed:
            return 0
        await self._delete(
            "deliveries",
            models.PointIdsList(points=[self._key_to_point_id(i) for i in doomed]),
        )
        await self._delete(
            "attempts",
            models.FilterSelector(
                filter=models.Filter(
                    must=[
                        models.FieldCondition(
                            key="delivery_id", match=models.MatchAny(any=doomed)
                        )
                    ]
                )
            ),
        )
        logger.info("Deleted %d deliveries created before %s", len(doomed), cutoff.isoformat())
        return len(doomed)

    # -- attempt log --------------------------------------------------------

    async def add_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        await self._upsert("attempts", attempt.id, attempt)
        return attempt

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        scroll_filter = models.Filter(
            must=[
                models.FieldCondition(key="delivery_id", match=models.MatchValue(value=delivery_id))
            ]
        )
        attempts = [
            self._from_payload(payload, DeliveryAttempt)
            for payload in await self._scroll_all("attempts", scroll_filter)
        ]
        attempts.sort(key=lambda a: (a.attempt_number, a.started_at))
        return attempts
