"""FastAPI application for Courier."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from courier import __version__
from courier.config import Settings
from courier.delivery import RetrySweeper
from courier.exceptions import CourierError, NotFoundError, ValidationError
from courier.logging import configure_logging, get_logger
from courier.service import WebhookService

from .router import router, set_service

logger = get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Map Courier errors onto HTTP status codes."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(CourierError)
    async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
        logger.error("Courier error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application.

    The lifespan builds the WebhookService, starts the retry sweeper when
    retry_sweep_interval_seconds is positive, and drains background
    deliveries on shutdown.

    Example:
        ```python
        from courier.api import create_app

        app = create_app()
        # Run with: uvicorn courier.api:create_app --factory --reload
        ```
    """
    if settings is None:
        settings = Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(level=settings.log_level, format=settings.log_format)
        logger.info(
            "Starting Courier API",
            storage_backend=settings.storage_backend,
            log_level=settings.log_level,
        )

        service = WebhookService.create(settings)
        await service.initialize()
        set_service(service)

        sweeper: RetrySweeper | None = None
        if settings.retry_sweep_interval_seconds > 0:
            sweeper = RetrySweeper(
                service.scheduler,
                interval_seconds=settings.retry_sweep_interval_seconds,
                stuck_after_seconds=settings.stuck_delivery_seconds,
            )
            sweeper.start()

        yield

        if sweeper is not None:
            await sweeper.stop()
        await service.close()
        set_service(None)
        logger.info("Courier API stopped")

    app = FastAPI(
        title="Courier",
        description="Signed, retried webhook delivery for application events.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")
    return app
