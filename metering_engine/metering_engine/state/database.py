"""Engine and session construction for the metering store.

The URL scheme picks the backend:

* ``postgresql+asyncpg://`` -- pooled engine with per-statement and lock
  timeouts so a stuck aggregate upsert cannot pin a connection forever.
* ``sqlite+aiosqlite://`` -- the local single-file (or in-memory) store
  built by :mod:`metering_engine.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_STATEMENT_TIMEOUT_MS = "30000"
_LOCK_TIMEOUT_MS = "10000"

# One sessionmaker per engine, keyed by id(engine).
_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def _sqlite_path(database_url: str) -> str:
    _, _, path = database_url.partition("///")
    return path or ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Build the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite:///<path>``.
        A SQLite URL without a path opens an in-memory store.
    pool_size, max_overflow:
        Connection pool sizing.  Only meaningful for PostgreSQL.
    """
    if database_url.startswith("sqlite"):
        from metering_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": _STATEMENT_TIMEOUT_MS,
                "lock_timeout": _LOCK_TIMEOUT_MS,
            }
        },
    )
    logger.info("Metering store engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the cached sessionmaker bound to *engine*.

    Sessions keep attributes loaded after commit so services can return
    ORM-derived models without another round trip.
    """
    factory = _factories.get(id(engine))
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _factories[id(engine)] = factory
    return factory


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect behind *session* (``postgresql`` or ``sqlite``)."""
    dialect = getattr(session.get_bind(), "dialect", None)
    return str(getattr(dialect, "name", ""))


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with get_session_factory(engine)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()
