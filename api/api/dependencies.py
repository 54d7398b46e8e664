"""FastAPI dependency injection for settings, sessions, the event bus and services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException
from metering_engine.config import Settings, load_settings
from metering_engine.state.database import get_engine
from metering_engine.state.database import get_session_factory as engine_session_factory
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.services.billing_service import StripeBillingProvider, UsageReporter
from api.services.event_bus import EventBus, build_event_bus
from api.services.export_service import ExportWorker, UsageExportService
from api.services.invoice_service import InvoiceGenerator
from api.services.limit_service import LimitEvaluator
from api.services.metering_service import MeteringService
from api.services.plan_catalog import PlanCatalog
from api.services.upgrade_service import UpgradePreviewer

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> Settings:
    """Return the cached engine :class:`Settings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[Settings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = engine_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that run outside a request, such as the export
    worker.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped ``AsyncSession``.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

_event_bus: EventBus | None = None


def init_event_bus() -> EventBus:
    """Create and cache the process-wide :class:`EventBus`."""
    global _event_bus  # noqa: PLW0603
    _event_bus = build_event_bus()
    return _event_bus


def get_event_bus() -> EventBus:
    """Return the cached event bus, building one on first use."""
    if _event_bus is None:
        return init_event_bus()
    return _event_bus


EventBusDep = Annotated[EventBus, Depends(get_event_bus)]

# ---------------------------------------------------------------------------
# Export worker
# ---------------------------------------------------------------------------

_export_worker: ExportWorker | None = None


def init_export_worker(settings: APISettings, event_bus: EventBus) -> ExportWorker:
    """Create and cache the background :class:`ExportWorker` (not started)."""
    global _export_worker  # noqa: PLW0603
    _export_worker = ExportWorker(
        get_session_factory(),
        event_bus=event_bus,
        concurrency=settings.export_worker_concurrency,
        maxsize=settings.export_queue_size,
    )
    return _export_worker


async def dispose_export_worker() -> None:
    global _export_worker  # noqa: PLW0603
    if _export_worker is not None:
        await _export_worker.stop()
        _export_worker = None


def get_export_worker() -> ExportWorker:
    if _export_worker is None:
        raise RuntimeError(
            "Export worker has not been initialised. Ensure init_export_worker() is called during application startup."
        )
    return _export_worker


ExportWorkerDep = Annotated[ExportWorker, Depends(get_export_worker)]

# ---------------------------------------------------------------------------
# Payment provider
# ---------------------------------------------------------------------------


def get_billing_provider(settings: SettingsDep) -> StripeBillingProvider:
    """Return the Stripe adapter, or 503 when billing is not configured."""
    if not settings.billing_enabled or not settings.stripe_secret_key.get_secret_value():
        raise HTTPException(status_code=503, detail="Payment provider integration is not enabled")
    return StripeBillingProvider(settings)


BillingProviderDep = Annotated[StripeBillingProvider, Depends(get_billing_provider)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_limit_evaluator(
    session: SessionDep,
    bus: EventBusDep,
    settings: EngineSettingsDep,
) -> LimitEvaluator:
    return LimitEvaluator(session, event_bus=bus, settings=settings)


LimitEvaluatorDep = Annotated[LimitEvaluator, Depends(get_limit_evaluator)]


def get_plan_catalog(
    session: SessionDep,
    bus: EventBusDep,
    limits: LimitEvaluatorDep,
    settings: EngineSettingsDep,
) -> PlanCatalog:
    return PlanCatalog(session, event_bus=bus, limit_evaluator=limits, settings=settings)


PlanCatalogDep = Annotated[PlanCatalog, Depends(get_plan_catalog)]


def get_metering_service(
    session: SessionDep,
    limits: LimitEvaluatorDep,
    catalog: PlanCatalogDep,
) -> MeteringService:
    return MeteringService(session, limit_evaluator=limits, plan_catalog=catalog)


MeteringServiceDep = Annotated[MeteringService, Depends(get_metering_service)]


def get_invoice_generator(
    session: SessionDep,
    bus: EventBusDep,
    settings: EngineSettingsDep,
) -> InvoiceGenerator:
    return InvoiceGenerator(session, settings=settings, event_bus=bus)


InvoiceGeneratorDep = Annotated[InvoiceGenerator, Depends(get_invoice_generator)]


def get_upgrade_previewer(session: SessionDep, settings: EngineSettingsDep) -> UpgradePreviewer:
    return UpgradePreviewer(session, settings=settings)


UpgradePreviewerDep = Annotated[UpgradePreviewer, Depends(get_upgrade_previewer)]


def get_usage_reporter(session: SessionDep, provider: BillingProviderDep) -> UsageReporter:
    return UsageReporter(session, provider)


UsageReporterDep = Annotated[UsageReporter, Depends(get_usage_reporter)]


def get_export_service(
    session: SessionDep,
    bus: EventBusDep,
    worker: ExportWorkerDep,
) -> UsageExportService:
    return UsageExportService(session, queue=worker, event_bus=bus)


ExportServiceDep = Annotated[UsageExportService, Depends(get_export_service)]
