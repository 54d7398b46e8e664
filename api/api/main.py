"""FastAPI application entry-point for the metering and billing API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import pydantic
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from metering_engine.errors import (
    BillingEngineError,
    ConcurrencyConflictError,
    ExportNotReadyError,
    InvalidInvoiceTransitionError,
    NotFoundError,
    PaymentProviderError,
    StoreError,
    ValidationError,
)
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, load_api_settings
from api.dependencies import (
    dispose_engine,
    dispose_export_worker,
    init_engine,
    init_event_bus,
    init_export_worker,
)
from api.middleware.logging import REQUEST_ID_HEADER, RequestLoggingMiddleware
from api.routers import billing, exports, health, limits, plans, usage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _configure_structured_logging() -> None:
    from api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables when running on local SQLite (PostgreSQL uses Alembic).
    - Build the event bus and start the export worker.

    On shutdown:
    - Stop the export worker.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if is_local:
        from metering_engine.state.sqlite_adapter import create_local_tables

        await create_local_tables(engine)

    event_bus = init_event_bus()
    worker = init_export_worker(settings, event_bus)
    await worker.start()

    yield

    await dispose_export_worker()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Error responses
# ---------------------------------------------------------------------------


def _error(status_code: int, exc: Exception, request: Request) -> JSONResponse:
    body = {"detail": str(exc), "error": exc.__class__.__name__}
    request_id = getattr(request.state, "request_id", None)
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Metering API",
        description="Usage metering, limits, tiered pricing and invoicing.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER, "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(limits.router, prefix="/api/v1")
    app.include_router(limits.alerts_router, prefix="/api/v1")
    app.include_router(plans.router, prefix="/api/v1")
    app.include_router(plans.subscriptions_router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(exports.router, prefix="/api/v1")

    # Probes live outside versioning.
    app.include_router(health.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("Rejected request on %s: %s", request.url.path, exc)
        return _error(422, exc, request)

    @app.exception_handler(pydantic.ValidationError)
    async def model_validation_error_handler(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
        logger.info("Invalid model data on %s: %s", request.url.path, exc)
        return _error(422, exc, request)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, exc, request)

    @app.exception_handler(ConcurrencyConflictError)
    async def concurrency_conflict_handler(request: Request, exc: ConcurrencyConflictError) -> JSONResponse:
        logger.warning("Concurrency conflict on %s: %s", request.url.path, exc)
        return _error(409, exc, request)

    @app.exception_handler(InvalidInvoiceTransitionError)
    async def invoice_transition_handler(request: Request, exc: InvalidInvoiceTransitionError) -> JSONResponse:
        return _error(409, exc, request)

    @app.exception_handler(ExportNotReadyError)
    async def export_not_ready_handler(request: Request, exc: ExportNotReadyError) -> JSONResponse:
        return _error(409, exc, request)

    @app.exception_handler(PaymentProviderError)
    async def payment_provider_handler(request: Request, exc: PaymentProviderError) -> JSONResponse:
        logger.warning("Payment provider error on %s: %s", request.url.path, exc)
        return _error(502, exc, request)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store error on %s: %s", request.url.path, exc)
        return _error(503, exc, request)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=503, content={"detail": "Store unavailable", "error": "StoreError"})

    @app.exception_handler(BillingEngineError)
    async def engine_error_handler(request: Request, exc: BillingEngineError) -> JSONResponse:
        logger.error("Unhandled engine error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal error"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal error"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
