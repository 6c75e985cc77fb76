"""Configuration management for Courier."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_STORAGE_BACKEND=qdrant
        COURIER_AUTO_DISABLE_THRESHOLD=5

    Policy values (backoff base and cap, auto-disable threshold) live here
    rather than in code so deployments can tune them without a release.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    storage_backend: Literal["memory", "qdrant"] = Field(
        default="memory",
        description="Storage collaborator for webhooks and deliveries",
    )
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="courier",
        description="Prefix for Qdrant collection names",
    )

    # Delivery
    default_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Per-attempt timeout for webhooks that don't set their own",
    )
    default_max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retry budget for webhooks that don't set their own",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Maximum HTTP attempts in flight per process",
    )
    deliver_immediately: bool = Field(
        default=True,
        description=(
            "Attempt deliveries in background tasks as soon as an event is triggered. "
            "When False, deliveries are only enqueued and the retry sweep sends them."
        ),
    )
    response_snippet_max_chars: int = Field(
        default=4000,
        ge=0,
        le=65536,
        description="Response bodies are truncated to this many characters in the delivery log",
    )
    signature_header: str = Field(
        default="X-Webhook-Signature",
        description="Header carrying the payload signature",
    )
    user_agent: str = Field(
        default="Courier-Webhooks/0.1",
        description="User-Agent sent with every delivery",
    )

    # Retry
    retry_base_delay_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Backoff base delay (doubles each retry)",
    )
    retry_max_delay_seconds: float = Field(
        default=3600.0,
        gt=0.0,
        description="Backoff cap before jitter is added",
    )
    retry_jitter: bool = Field(
        default=True,
        description="Add uniform jitter in [0, base delay) to every backoff",
    )
    retry_sweep_interval_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Interval of the background retry sweep (0 disables it)",
    )
    retry_sweep_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum deliveries claimed per sweep",
    )
    stuck_delivery_seconds: int = Field(
        default=900,
        ge=60,
        description="In-flight deliveries older than this are considered abandoned",
    )

    # Auto-disable
    auto_disable_threshold: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Consecutive terminal failures before a webhook is auto-disabled",
    )

    # Retention
    delivery_retention_days: int = Field(
        default=30,
        ge=1,
        description="Default retention window for delivery cleanup",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_retry_delays(self) -> "Settings":
        """Validate that the backoff cap is not below the base delay.

        A cap below the base would make every retry wait the cap and
        silently disable the exponential growth.
        """
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                f"retry_max_delay_seconds ({self.retry_max_delay_seconds}) must be at least "
                f"retry_base_delay_seconds ({self.retry_base_delay_seconds})"
            )
        if self.env == "production" and self.storage_backend == "memory":
            logger.warning(
                "In-memory storage in production: deliveries are lost on restart"
            )
        return self


# Global settings instance
settings = Settings()
