"""Tests for api/api/routers/limits.py (limits and alerts)."""

from __future__ import annotations

import pytest
from httpx import AsyncClient


async def _track(client: AsyncClient, quantity: float) -> dict:
    resp = await client.post(
        "/api/v1/usage/events",
        json={"organization_id": "org-1", "metric_id": "api_calls", "quantity": quantity},
    )
    assert resp.status_code == 201
    return resp.json()


class TestLimits:
    @pytest.mark.asyncio
    async def test_set_and_check_limit(self, client: AsyncClient) -> None:
        put = await client.put("/api/v1/limits/org-1", json={"metric_id": "api_calls", "limit_value": 200})
        await _track(client, 50)

        resp = await client.get("/api/v1/limits/org-1")

        assert put.status_code == 200
        assert put.json()["limit_type"] == "soft"
        (status,) = resp.json()
        assert status["current_usage"] == 50
        assert status["percentage_used"] == 25.0
        assert status["is_over_limit"] is False

    @pytest.mark.asyncio
    async def test_invalid_limit_is_rejected(self, client: AsyncClient) -> None:
        resp = await client.put(
            "/api/v1/limits/org-1",
            json={"metric_id": "api_calls", "limit_value": 0},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_remove_limit(self, client: AsyncClient) -> None:
        put = await client.put("/api/v1/limits/org-1", json={"metric_id": "api_calls", "limit_value": 200})
        limit_id = put.json()["id"]

        deleted = await client.delete(f"/api/v1/limits/org-1/{limit_id}")
        missing = await client.delete(f"/api/v1/limits/org-1/{limit_id}")

        assert deleted.status_code == 204
        assert missing.status_code == 404
        assert (await client.get("/api/v1/limits/org-1")).json() == []


class TestAlerts:
    @pytest.mark.asyncio
    async def test_crossing_threshold_raises_alert(self, client: AsyncClient) -> None:
        await client.put(
            "/api/v1/limits/org-1",
            json={"metric_id": "api_calls", "limit_value": 100, "limit_type": "hard"},
        )

        tracked = await _track(client, 100)
        alerts = (await client.get("/api/v1/alerts/org-1")).json()

        assert {a["alert_type"] for a in tracked["alerts"]} == {"threshold_exceeded", "limit_exceeded"}
        assert {a["id"] for a in alerts} == {a["id"] for a in tracked["alerts"]}

    @pytest.mark.asyncio
    async def test_acknowledge_alert(self, client: AsyncClient) -> None:
        await client.put("/api/v1/limits/org-1", json={"metric_id": "api_calls", "limit_value": 100})
        (alert,) = (await _track(client, 85))["alerts"]

        resp = await client.post(f"/api/v1/alerts/{alert['id']}/acknowledge")

        assert resp.status_code == 200
        assert resp.json()["resolved"] is True
        assert (await client.get("/api/v1/alerts/org-1")).json() == []
        history = await client.get("/api/v1/alerts/org-1", params={"include_resolved": "true"})
        assert len(history.json()) == 1

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/alerts/missing/acknowledge")
        assert resp.status_code == 404
