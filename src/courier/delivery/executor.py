"""Single delivery attempts.

The executor performs exactly one HTTP request for a claimed delivery and
classifies what happened:

- 2xx: succeeded
- 429, 5xx, timeouts and network errors: failed_retryable
- any other status, and unexpected errors: failed_terminal

It never raises for a delivery failure. Every attempt is appended to the
delivery log and folded into the webhook's statistics; a storage error
while recording is logged and does not change the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime

import httpx

from courier.clock import Clock, system_clock
from courier.config import Settings, settings
from courier.models import (
    AttemptOutcome,
    DeliveryAttempt,
    OutcomeStatus,
    Webhook,
    WebhookDelivery,
    truncate,
)
from courier.signing import Signer
from courier.storage import WebhookStorage

logger = logging.getLogger(__name__)

SUBSCRIBER_DISABLED = "subscriber disabled"
REDACTED = "[redacted]"


def classify_status(status_code: int) -> OutcomeStatus:
    """Map an HTTP status code to an attempt outcome."""
    if 200 <= status_code < 300:
        return OutcomeStatus.SUCCEEDED
    if status_code == 429 or status_code >= 500:
        return OutcomeStatus.FAILED_RETRYABLE
    return OutcomeStatus.FAILED_TERMINAL


class DeliveryExecutor:
    """Sends one signed HTTP request per attempt.

    Args:
        storage: Storage collaborator for the attempt log and statistics.
        signer: Signs request bodies. Defaults to a Signer using the
            configured signature header.
        config: Settings to read defaults from.
        clock: Time source for timestamps.
        client: Shared httpx client. When omitted the executor creates and
            owns one.
    """

    def __init__(
        self,
        storage: WebhookStorage,
        signer: Signer | None = None,
        *,
        config: Settings | None = None,
        clock: Clock = system_clock,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._storage = storage
        self._config = config or settings
        self._signer = signer or Signer(header_name=self._config.signature_header)
        self._clock = clock
        self._client = client
        self._owns_client = client is None

    @property
    def signer(self) -> Signer:
        return self._signer

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_headers(
        self, delivery: WebhookDelivery, body: bytes, sent_at: datetime
    ) -> dict[str, str]:
        """Request headers for one attempt, signature included."""
        headers = dict(delivery.headers)
        headers.update(
            {
                "Content-Type": delivery.content_type,
                "User-Agent": self._config.user_agent,
                "X-Webhook-Event": delivery.event_type,
                "X-Webhook-Id": delivery.webhook_id,
                "X-Webhook-Delivery-Id": delivery.id,
                "X-Webhook-Attempt": str(delivery.attempt_count + 1),
                "X-Webhook-Timestamp": str(int(sent_at.timestamp())),
            }
        )
        headers.update(
            self._signer.signature_headers(
                body, delivery.secret, delivery.auth_scheme, delivery.credentials
            )
        )
        return headers

    async def attempt(
        self,
        delivery: WebhookDelivery,
        webhook: Webhook | None,
        *,
        check_active: bool = True,
    ) -> AttemptOutcome:
        """Attempt delivery once and record the attempt.

        Args:
            delivery: A delivery the caller holds the in-flight claim for.
            webhook: Current webhook record (None if it no longer exists).
            check_active: Skip the request when the webhook is missing,
                deleted or inactive. Webhook tests pass False.

        Returns:
            The classified outcome.
        """
        if check_active and (webhook is None or webhook.is_deleted or not webhook.is_active):
            logger.info(
                "Skipping delivery %s: webhook %s is disabled",
                delivery.id,
                delivery.webhook_id,
            )
            return AttemptOutcome(
                status=OutcomeStatus.FAILED_TERMINAL,
                error=SUBSCRIBER_DISABLED,
                error_type="SubscriberDisabled",
                counts_as_failure=False,
            )

        timeout = float(
            webhook.timeout_seconds if webhook is not None else self._config.default_timeout_seconds
        )
        body = delivery.payload.encode("utf-8")
        started_at = self._clock.now()
        headers = self.build_headers(delivery, body, started_at)

        response: httpx.Response | None = None
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._http().request(
                    delivery.http_method,
                    delivery.target_url,
                    content=body,
                    headers=headers,
                    timeout=httpx.Timeout(timeout),
                ),
                timeout=timeout,
            )
            outcome = self._from_response(response)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            outcome = AttemptOutcome(
                status=OutcomeStatus.FAILED_RETRYABLE,
                error=f"timeout after {timeout:g}s",
                error_type="Timeout",
            )
        except httpx.RequestError as e:
            outcome = AttemptOutcome(
                status=OutcomeStatus.FAILED_RETRYABLE,
                error=f"connection error: {e}",
                error_type="ConnectionError",
            )
        except Exception as e:
            logger.exception("Unexpected error delivering %s: %s", delivery.id, e)
            outcome = AttemptOutcome(
                status=OutcomeStatus.FAILED_TERMINAL,
                error=f"unexpected error: {e}",
                error_type=type(e).__name__,
            )
        outcome.duration_ms = int((time.perf_counter() - start) * 1000)

        try:
            await self._record(delivery, headers, response, outcome, started_at)
        except Exception:
            logger.exception("Could not record attempt for delivery %s", delivery.id)

        if outcome.success:
            logger.info(
                "Delivered %s to %s (status %s, %dms)",
                delivery.event_type,
                delivery.target_url,
                outcome.status_code,
                outcome.duration_ms,
            )
        else:
            logger.warning(
                "Delivery %s to %s failed (%s): %s",
                delivery.id,
                delivery.target_url,
                outcome.status.value,
                outcome.error,
            )
        return outcome

    def _from_response(self, response: httpx.Response) -> AttemptOutcome:
        status = classify_status(response.status_code)
        snippet = truncate(response.text, self._config.response_snippet_max_chars)
        error = None
        if status is not OutcomeStatus.SUCCEEDED:
            error = f"HTTP {response.status_code}"
        return AttemptOutcome(
            status=status,
            status_code=response.status_code,
            response_snippet=snippet,
            error=error,
            error_type=None if error is None else "HttpError",
        )

    async def _record(
        self,
        delivery: WebhookDelivery,
        headers: dict[str, str],
        response: httpx.Response | None,
        outcome: AttemptOutcome,
        started_at: datetime,
    ) -> None:
        sensitive = self._signer.sensitive_headers
        logged_headers = {
            name: REDACTED if name.lower() in sensitive else value
            for name, value in headers.items()
        }
        await self._storage.add_attempt(
            DeliveryAttempt(
                delivery_id=delivery.id,
                webhook_id=delivery.webhook_id,
                attempt_number=delivery.attempt_count,
                request_method=delivery.http_method,
                request_url=delivery.target_url,
                request_headers=logged_headers,
                status_code=outcome.status_code,
                response_snippet=outcome.response_snippet,
                response_headers=dict(response.headers) if response is not None else {},
                error=outcome.error,
                error_type=outcome.error_type,
                outcome=outcome.status,
                started_at=started_at,
                completed_at=self._clock.now(),
                duration_ms=outcome.duration_ms,
            )
        )
        await self._storage.record_webhook_attempt(
            delivery.webhook_id,
            success=outcome.success,
            status_code=outcome.status_code,
            duration_ms=outcome.duration_ms,
            error=outcome.error,
            now=self._clock.now(),
        )
