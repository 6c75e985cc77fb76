"""Auto-disable policy.

A webhook whose deliveries keep ending in terminal failure is switched off
so a dead endpoint stops consuming delivery capacity. One success resets
the count. Only an operator re-enables an auto-disabled webhook.
"""

from __future__ import annotations

import logging
from typing import Any

from courier.clock import Clock, system_clock
from courier.exceptions import ConfigurationError
from courier.models import Webhook
from courier.storage import WebhookStorage

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 10


class AutoDisablePolicy:
    """Counts consecutive terminal failures per webhook and disables at a threshold."""

    def __init__(
        self,
        storage: WebhookStorage,
        threshold: int = DEFAULT_THRESHOLD,
        *,
        clock: Clock = system_clock,
    ) -> None:
        if threshold < 1:
            raise ConfigurationError("threshold must be at least 1")
        self._storage = storage
        self.threshold = threshold
        self._clock = clock

    async def record_success(self, webhook_id: str) -> None:
        await self._storage.update_webhook_with(
            webhook_id,
            lambda wh: {"consecutive_failures": 0} if wh.consecutive_failures else {},
        )

    async def record_terminal_failure(self, webhook_id: str, reason: str) -> bool:
        """Count one terminal failure.

        Returns:
            True if this failure disabled the webhook.
        """
        count = await self._storage.increment_consecutive_failures(webhook_id)
        if count is None or count < self.threshold:
            return False

        now = self._clock.now()
        disabled = False

        def disable(webhook: Webhook) -> dict[str, Any]:
            nonlocal disabled
            if webhook.is_auto_disabled or not webhook.is_active or webhook.is_deleted:
                return {}
            disabled = True
            return {
                "is_active": False,
                "is_auto_disabled": True,
                "auto_disabled_at": now,
                "auto_disable_reason": (
                    f"{webhook.consecutive_failures} consecutive failures; last: {reason}"
                ),
                "updated_at": now,
            }

        await self._storage.update_webhook_with(webhook_id, disable)
        if disabled:
            logger.warning(
                "Webhook %s auto-disabled after %d consecutive failures",
                webhook_id,
                count,
            )
        return disabled

    async def get_auto_disabled(self) -> list[Webhook]:
        return [wh for wh in await self._storage.list_webhooks() if wh.is_auto_disabled]

    async def re_enable(self, webhook_id: str) -> bool:
        """Reactivate an auto-disabled webhook and reset its failure count.

        Returns:
            False if the webhook doesn't exist or isn't auto-disabled.
        """
        now = self._clock.now()
        enabled = False

        def enable(webhook: Webhook) -> dict[str, Any]:
            nonlocal enabled
            if not webhook.is_auto_disabled or webhook.is_deleted:
                return {}
            enabled = True
            return {
                "is_active": True,
                "is_auto_disabled": False,
                "auto_disabled_at": None,
                "auto_disable_reason": None,
                "consecutive_failures": 0,
                "updated_at": now,
            }

        await self._storage.update_webhook_with(webhook_id, enable)
        if enabled:
            logger.info("Webhook %s re-enabled", webhook_id)
        return enabled
