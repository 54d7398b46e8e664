"""Shared fixtures for metering API tests.

Provides a SQLite-backed database session, a recording event bus, a
FastAPI test client with dependency overrides, and sample plans used
across the test modules.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from metering_engine.config import Settings, load_settings
from metering_engine.models.plan import BillingPlan, PricingModel, PricingRule, Tier, UsageLimitTemplate
from metering_engine.models.usage import LimitType
from metering_engine.state.tables import Base
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

from api.config import APISettings
from api.dependencies import (
    get_db_session,
    get_engine_settings,
    get_event_bus,
    get_export_worker,
    get_settings,
)
from api.main import create_app
from api.services.event_bus import EventBus, EventPayload

# Fixed "current time" for services constructed directly in tests.
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def fixed_clock() -> datetime:
    return NOW


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def clock():
    return fixed_clock


# ---------------------------------------------------------------------------
# SQLite compatibility
# ---------------------------------------------------------------------------


def _patch_columns_for_sqlite() -> None:
    """Swap Postgres-only column types so the metadata can be created on SQLite.

    SQLite stores datetimes without an offset; the decorator re-attaches
    UTC on the way out so comparisons against aware values keep working.
    """

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return API settings suitable for testing (payment provider disabled)."""
    return APISettings(
        host="0.0.0.0",
        port=8000,
        debug=True,
        database_url="sqlite+aiosqlite://",
        cors_origins=["http://localhost:3000"],
        billing_enabled=False,
    )


@pytest.fixture()
def engine_settings() -> Settings:
    return load_settings(invoice_due_days=30, invoice_number_prefix="INV", upgrade_lookback_days=30)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    """A file-backed SQLite engine so that separate sessions share data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'metering.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def mock_session() -> AsyncMock:
    """Return a mock AsyncSession for tests that only need call assertions."""
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()

    result_mock = MagicMock()
    result_mock.scalar_one_or_none.return_value = None
    result_mock.scalar_one.return_value = 0
    result_mock.scalars.return_value.all.return_value = []
    result_mock.all.return_value = []

    session.execute = AsyncMock(return_value=result_mock)
    return session


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def recorded_events() -> list[EventPayload]:
    return []


@pytest.fixture()
def event_bus(recorded_events: list[EventPayload]) -> EventBus:
    """An event bus whose only handler records every payload."""
    bus = EventBus()

    async def _record(payload: EventPayload) -> None:
        recorded_events.append(payload)

    bus.register_handler(_record)
    return bus


# ---------------------------------------------------------------------------
# FastAPI test client (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def export_queue() -> MagicMock:
    """Stand-in for the export worker: records queued ids without processing."""
    queue = MagicMock()
    queue.enqueue = AsyncMock()
    return queue


@pytest.fixture()
def app(test_settings, engine_settings, db_session, event_bus, export_queue):
    """Create a FastAPI app wired to the SQLite session and test doubles.

    The lifespan is not run by ``ASGITransport``, so no engine or worker
    is started; every dependency that would need them is overridden.
    """
    application = create_app()

    async def _override_session():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    application.dependency_overrides[get_event_bus] = lambda: event_bus
    application.dependency_overrides[get_export_worker] = lambda: export_queue
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Sample plans
# ---------------------------------------------------------------------------


@pytest.fixture()
def starter_plan() -> BillingPlan:
    """$10/month, 1000 free API calls then $0.01 each, soft limit of 10k calls."""
    return BillingPlan(
        id="starter-2026",
        name="Starter",
        base_price=10.0,
        pricing_rules=[
            PricingRule(metric_id="api_calls", unit_price=0.01, free_tier=1000),
        ],
        limit_templates=[
            UsageLimitTemplate(metric_id="api_calls", limit_type=LimitType.SOFT, limit_value=10_000),
        ],
    )


@pytest.fixture()
def pro_plan() -> BillingPlan:
    """$40/month with tiered API calls and per-GB storage."""
    return BillingPlan(
        id="pro-2026",
        name="Pro",
        base_price=40.0,
        pricing_rules=[
            PricingRule(
                metric_id="api_calls",
                model=PricingModel.TIERED,
                tiers=[
                    Tier(**{"from": 0, "to": 10_000, "unit_price": 0.005}),
                    Tier(**{"from": 10_000, "unit_price": 0.002}),
                ],
            ),
            PricingRule(metric_id="storage_gb", unit_price=0.1, free_tier=10),
        ],
    )
