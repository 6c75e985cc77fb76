"""Structured logging configuration for Courier.

Courier's own modules log through the standard library; the API and the
retry sweeper use structlog directly. configure_logging routes both
through one structlog ProcessorFormatter on a stdout handler, so every
record, wherever it came from, is rendered the same way and carries the
context bound with bind_context (webhook_id, delivery_id, ...).

Context lives in contextvars, so it is scoped to the current asyncio task.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

_configured = False
_handler: logging.Handler | None = None


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(
    level: str = "INFO",
    format: str = "json",
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for Courier.

    Safe to call more than once; the previous Courier handler is replaced.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: "json" for production, "text" for colored console output.
        stream: Where records are written. Defaults to stdout.

    Example:
        ```python
        from courier.logging import configure_logging, get_logger

        configure_logging(level="DEBUG", format="text")
        get_logger().info("Courier started", version="0.1.0")
        ```
    """
    global _configured, _handler

    log_level = getattr(logging, level.upper(), logging.INFO)
    shared = _shared_processors()

    final: list[Processor] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if format.lower() == "json":
        final += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        final.append(structlog.dev.ConsoleRenderer(colors=True))

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processors=final)
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.setLevel(log_level)
    _handler = handler

    # One INFO line per request otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()

    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Bind values to every later log record of the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Drop everything bound in the current task."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def bound_context(**kwargs: object) -> Iterator[None]:
    """Bind values for the duration of a block.

    Values that were already bound under the same keys are restored on
    exit, so blocks nest.

    Example:
        ```python
        with bound_context(webhook_id=delivery.webhook_id, delivery_id=delivery.id):
            await executor.attempt(delivery, webhook)
        ```
    """
    current = structlog.contextvars.get_contextvars()
    previous = {key: current[key] for key in kwargs if key in current}
    bind_context(**kwargs)
    try:
        yield
    finally:
        unbind_context(*kwargs)
        if previous:
            bind_context(**previous)
