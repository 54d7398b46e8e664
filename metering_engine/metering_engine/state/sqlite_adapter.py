"""Local SQLite store for running the metering API without PostgreSQL.

The same ORM tables back both stores.  On SQLite:

* there is a single writer, so aggregate increments and invoice-number
  allocation are serialised by the database file lock;
* the schema is created at startup with :func:`create_local_tables`
  rather than by Alembic;
* ``JSONB`` columns are stored through SQLite's ``JSON`` variant.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

# Applied on every new DBAPI connection.  busy_timeout lets the export
# worker and request handlers wait on the write lock instead of failing.
_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(db_path: Path | str = ".metering/metering.db") -> AsyncEngine:
    """Open (creating if needed) the SQLite store at *db_path*.

    ``":memory:"`` gives a throwaway store; any other value is treated as
    a file path whose parent directory is created on demand.
    """
    if str(db_path) == _MEMORY:
        url = f"sqlite+aiosqlite:///{_MEMORY}"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: object, _record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Local metering store at %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing tables.  Existing tables and rows are left alone."""
    from metering_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Local metering schema ready (%d tables)", len(Base.metadata.tables))
