"""FastAPI router for webhook management endpoints."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from courier import __version__
from courier.models import DeliveryAttempt, DeliveryResult, TriggerResult, WebhookStats
from courier.service import WebhookService

from .schemas import (
    CleanupResponse,
    CreateWebhookRequest,
    DeliveryResponse,
    HealthResponse,
    ProcessRetriesResponse,
    ReclaimResponse,
    ReEnableResponse,
    SecretResponse,
    SignatureVerificationResponse,
    TriggerRequest,
    UpdateWebhookRequest,
    VerifySignatureRequest,
    WebhookCreatedResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

# Service instance (set by app lifespan)
_service: WebhookService | None = None


def set_service(service: WebhookService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> WebhookService:
    """Dependency returning the WebhookService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[WebhookService, Depends(get_service)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Report whether the service is initialized."""
    return HealthResponse(
        status="healthy" if _service is not None else "unhealthy",
        version=__version__,
        storage_connected=_service is not None,
    )


# -- webhooks -----------------------------------------------------------------


@router.get("/webhooks", response_model=list[WebhookResponse], tags=["webhooks"])
async def list_webhooks(
    service: ServiceDep, store_id: str | None = None
) -> list[WebhookResponse]:
    """List webhooks, optionally only those owned by one store."""
    webhooks = await service.list_webhooks(store_id=store_id)
    return [WebhookResponse.from_webhook(wh) for wh in webhooks]


@router.get("/webhooks/active", response_model=list[WebhookResponse], tags=["webhooks"])
async def list_active(service: ServiceDep) -> list[WebhookResponse]:
    return [WebhookResponse.from_webhook(wh) for wh in await service.list_active()]


@router.get("/webhooks/auto-disabled", response_model=list[WebhookResponse], tags=["webhooks"])
async def list_auto_disabled(service: ServiceDep) -> list[WebhookResponse]:
    return [WebhookResponse.from_webhook(wh) for wh in await service.get_auto_disabled()]


@router.get(
    "/webhooks/by-store/{store_id}", response_model=list[WebhookResponse], tags=["webhooks"]
)
async def list_by_store(store_id: str, service: ServiceDep) -> list[WebhookResponse]:
    return [WebhookResponse.from_webhook(wh) for wh in await service.list_by_store(store_id)]


@router.get(
    "/webhooks/by-event/{event_type}", response_model=list[WebhookResponse], tags=["webhooks"]
)
async def list_by_event(
    event_type: str, service: ServiceDep, store_id: str | None = None
) -> list[WebhookResponse]:
    """Webhooks an event of this type would be delivered to."""
    webhooks = await service.list_by_event(event_type, store_id=store_id)
    return [WebhookResponse.from_webhook(wh) for wh in webhooks]


@router.get("/webhooks/generate-secret", response_model=SecretResponse, tags=["signing"])
async def generate_secret(service: ServiceDep) -> SecretResponse:
    return SecretResponse(secret=service.generate_secret())


@router.post(
    "/webhooks/verify-signature",
    response_model=SignatureVerificationResponse,
    tags=["signing"],
)
async def verify_signature(
    request: VerifySignatureRequest, service: ServiceDep
) -> SignatureVerificationResponse:
    """Check a signature against a payload and secret."""
    is_valid = service.verify_signature(
        request.payload, request.signature, request.secret, request.auth_scheme
    )
    return SignatureVerificationResponse(is_valid=is_valid)


@router.post(
    "/webhooks",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["webhooks"],
)
async def create_webhook(
    request: CreateWebhookRequest, service: ServiceDep
) -> WebhookCreatedResponse:
    """Register a webhook. The response is the only time the secret is shown."""
    webhook = await service.create_webhook(**request.model_dump())
    logger.info("webhook_created", webhook_id=webhook.id, store_id=webhook.store_id)
    return WebhookCreatedResponse.from_created(webhook)


@router.get("/webhooks/{webhook_id}", response_model=WebhookResponse, tags=["webhooks"])
async def get_webhook(webhook_id: str, service: ServiceDep) -> WebhookResponse:
    return WebhookResponse.from_webhook(await service.get_webhook(webhook_id))


@router.put("/webhooks/{webhook_id}", response_model=WebhookResponse, tags=["webhooks"])
async def update_webhook(
    webhook_id: str, request: UpdateWebhookRequest, service: ServiceDep
) -> WebhookResponse:
    """Update the fields present in the request body."""
    changes = request.model_dump(exclude_unset=True)
    webhook = await service.update_webhook(webhook_id, **changes)
    return WebhookResponse.from_webhook(webhook)


@router.delete(
    "/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["webhooks"]
)
async def delete_webhook(webhook_id: str, service: ServiceDep) -> None:
    """Soft-delete a webhook. Delivery history is kept."""
    await service.delete_webhook(webhook_id)


@router.post("/webhooks/{webhook_id}/test", response_model=DeliveryResult, tags=["webhooks"])
async def test_webhook(webhook_id: str, service: ServiceDep) -> DeliveryResult:
    """Send a test.ping and wait for the subscriber's answer."""
    return await service.test(webhook_id)


@router.post(
    "/webhooks/{webhook_id}/re-enable", response_model=ReEnableResponse, tags=["webhooks"]
)
async def re_enable(webhook_id: str, service: ServiceDep) -> ReEnableResponse:
    return ReEnableResponse(webhook_id=webhook_id, re_enabled=await service.re_enable(webhook_id))


@router.get("/webhooks/{webhook_id}/stats", response_model=WebhookStats, tags=["webhooks"])
async def get_statistics(webhook_id: str, service: ServiceDep) -> WebhookStats:
    return await service.get_statistics(webhook_id)


# -- events and deliveries ----------------------------------------------------


@router.post(
    "/webhooks/trigger",
    response_model=TriggerResult,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["deliveries"],
)
async def trigger(request: TriggerRequest, service: ServiceDep) -> TriggerResult:
    """Raise an event. Deliveries are queued; the response doesn't wait for them."""
    return await service.trigger(request.event_type, request.payload, request.store_id)


@router.get(
    "/webhooks/{webhook_id}/deliveries",
    response_model=list[DeliveryResponse],
    tags=["deliveries"],
)
async def get_deliveries(
    webhook_id: str,
    service: ServiceDep,
    skip: Annotated[int, Query(ge=0)] = 0,
    take: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[DeliveryResponse]:
    deliveries = await service.get_deliveries(webhook_id, skip=skip, take=take)
    return [DeliveryResponse.from_delivery(d) for d in deliveries]


@router.get(
    "/webhooks/deliveries/{delivery_id}",
    response_model=DeliveryResponse,
    tags=["deliveries"],
)
async def get_delivery(delivery_id: str, service: ServiceDep) -> DeliveryResponse:
    return DeliveryResponse.from_delivery(await service.get_delivery(delivery_id))


@router.get(
    "/webhooks/deliveries/{delivery_id}/attempts",
    response_model=list[DeliveryAttempt],
    tags=["deliveries"],
)
async def get_delivery_attempts(delivery_id: str, service: ServiceDep) -> list[DeliveryAttempt]:
    """Delivery log of one delivery, oldest attempt first."""
    return await service.get_delivery_attempts(delivery_id)


@router.post(
    "/webhooks/deliveries/{delivery_id}/retry",
    response_model=DeliveryResult,
    tags=["deliveries"],
)
async def retry_delivery(delivery_id: str, service: ServiceDep) -> DeliveryResult:
    """Retry a pending or failed delivery now."""
    return await service.retry_delivery(delivery_id)


# -- maintenance --------------------------------------------------------------


@router.post(
    "/webhooks/process-retries", response_model=ProcessRetriesResponse, tags=["maintenance"]
)
async def process_retries(service: ServiceDep) -> ProcessRetriesResponse:
    return ProcessRetriesResponse(processed_count=await service.process_pending_retries())


@router.post("/webhooks/reclaim", response_model=ReclaimResponse, tags=["maintenance"])
async def reclaim_stuck(
    service: ServiceDep,
    older_than_seconds: Annotated[float | None, Query(gt=0)] = None,
) -> ReclaimResponse:
    released = await service.reclaim_stuck_deliveries(older_than_seconds)
    return ReclaimResponse(released_count=released)


@router.post("/webhooks/cleanup", response_model=CleanupResponse, tags=["maintenance"])
async def cleanup(
    service: ServiceDep,
    days_to_keep: Annotated[int, Query(ge=0)] = 30,
) -> CleanupResponse:
    """Delete finished deliveries older than days_to_keep."""
    deleted = await service.cleanup_old_deliveries(days_to_keep)
    logger.info("deliveries_cleaned_up", deleted=deleted, days_to_keep=days_to_keep)
    return CleanupResponse(deleted_count=deleted, days_to_keep=days_to_keep)
