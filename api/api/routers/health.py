"""Liveness and readiness endpoints.

Both live at the application root (no version prefix) so orchestrators
and load-balancers can probe them independently of the API version.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import __version__
from api.dependencies import SessionDep
from api.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["infrastructure"])


@router.get("/health", response_model=HealthResponse)
async def health(session: SessionDep) -> HealthResponse:
    """Liveness probe.

    Always returns HTTP 200 so that load-balancers see the process as
    alive; ``db`` reports whether the store is reachable.
    """
    db = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        db = "degraded"
    return HealthResponse(status="healthy", version=__version__, db=db)


@router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    """Readiness probe: HTTP 503 while the database is unreachable."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "version": __version__, "checks": {"db": "unavailable"}},
        )
    return JSONResponse(
        status_code=200,
        content={"status": "ready", "version": __version__, "checks": {"db": "ok"}},
    )
