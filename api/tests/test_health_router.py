"""Tests for api/api/routers/health.py"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from api import __version__
from api.dependencies import get_db_session


@pytest.fixture()
def unreachable_store(app, mock_session: AsyncMock) -> AsyncMock:
    """Route the probes to a session whose every query fails."""
    mock_session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("unreachable")))
    app.dependency_overrides[get_db_session] = lambda: mock_session
    return mock_session


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_ok(self, client: AsyncClient) -> None:
        resp = await client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "version": __version__, "db": "ok"}

    @pytest.mark.asyncio
    async def test_ready_ok(self, client: AsyncClient) -> None:
        resp = await client.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["checks"] == {"db": "ok"}


class TestDegradedStore:
    @pytest.mark.asyncio
    async def test_health_reports_degraded(self, client: AsyncClient, unreachable_store) -> None:
        resp = await client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["db"] == "degraded"

    @pytest.mark.asyncio
    async def test_ready_returns_503(self, client: AsyncClient, unreachable_store) -> None:
        resp = await client.get("/ready")

        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"
