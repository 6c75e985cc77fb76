"""Retry helpers for Qdrant storage calls.

Transient network and server errors are retried with exponential backoff;
client errors (4xx, validation) surface immediately.
"""

from __future__ import annotations

import logging

import httpx
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.ConnectError,
    httpx.TimeoutException,
    ResponseHandlingException,
)


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying: network failures and 5xx responses."""
    if isinstance(exc, UnexpectedResponse):
        return exc.status_code is not None and exc.status_code >= 500
    return isinstance(exc, TRANSIENT_ERRORS)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying Qdrant call %s (attempt %d): %s",
        retry_state.fn.__name__ if retry_state.fn else "unknown",
        retry_state.attempt_number,
        exc,
    )


qdrant_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception(is_transient),
    before_sleep=_log_retry,
    reraise=True,
)
