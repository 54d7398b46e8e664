"""Tests for api/api/services/metering_service.py

Covers:
- track: event log append, aggregate increment, idempotency, validation
- track_batch: equivalence with single tracking, rejected entries,
  in-batch duplicates, per-group rollback
- Reads: arbitrary-period usage, current month with plan cost
- Metric catalog registration
- Store error translation
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from metering_engine.errors import ConcurrencyConflictError, MetricNotFoundError, StoreError, ValidationError
from metering_engine.models.billing import DateRange
from metering_engine.models.usage import UsageLimit, UsageMetric
from metering_engine.state.repository import UsageEventRepository
from sqlalchemy.exc import OperationalError

from api.services.limit_service import LimitEvaluator
from api.services.metering_service import MeteringService, translate_store_error
from api.services.plan_catalog import PlanCatalog

_MARCH = DateRange(start=datetime(2026, 3, 1, tzinfo=UTC), end=datetime(2026, 4, 1, tzinfo=UTC))


def _event(now: datetime, metric_id: str = "api_calls", quantity: float = 1, **extra) -> dict:
    return {
        "organization_id": extra.pop("organization_id", "org-1"),
        "metric_id": metric_id,
        "quantity": quantity,
        "timestamp": now,
        **extra,
    }


@pytest.fixture()
def limits(db_session, event_bus, engine_settings, clock) -> LimitEvaluator:
    return LimitEvaluator(db_session, event_bus=event_bus, settings=engine_settings, clock=clock)


@pytest.fixture()
def catalog(db_session, event_bus, limits, engine_settings, clock) -> PlanCatalog:
    return PlanCatalog(db_session, event_bus=event_bus, limit_evaluator=limits, settings=engine_settings, clock=clock)


@pytest.fixture()
def service(db_session, limits, catalog, clock) -> MeteringService:
    return MeteringService(db_session, limit_evaluator=limits, plan_catalog=catalog, clock=clock)


# ---------------------------------------------------------------------------
# track
# ---------------------------------------------------------------------------


class TestTrack:
    @pytest.mark.asyncio
    async def test_records_event_and_aggregate(self, service: MeteringService, now: datetime) -> None:
        first = await service.track(_event(now, quantity=5))
        second = await service.track(_event(now, quantity=2.5))

        assert first.total_usage == 5
        assert second.total_usage == 7.5
        assert second.period_start == _MARCH.start
        assert second.period_end == _MARCH.end
        assert not second.duplicate

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, session_factory, clock, now: datetime) -> None:
        async def _track_once(i: int) -> None:
            async with session_factory() as session:
                await MeteringService(session, clock=clock).track(_event(now, event_id=f"evt-{i}"))
                await session.commit()

        await asyncio.gather(*(_track_once(i) for i in range(25)))

        async with session_factory() as session:
            (summary,) = await MeteringService(session, clock=clock).get_current_usage("org-1")
        assert summary.total_usage == 25

    @pytest.mark.asyncio
    async def test_duplicate_idempotency_key_is_not_counted(self, service: MeteringService, now: datetime) -> None:
        await service.track(_event(now, quantity=5, idempotency_key="req-1"))
        repeat = await service.track(_event(now, quantity=5, idempotency_key="req-1"))

        assert repeat.duplicate
        assert repeat.total_usage == 5
        assert repeat.alerts == []

    @pytest.mark.asyncio
    async def test_same_key_in_other_organization_is_counted(self, service: MeteringService, now: datetime) -> None:
        await service.track(_event(now, idempotency_key="req-1"))
        other = await service.track(_event(now, idempotency_key="req-1", organization_id="org-2"))
        assert not other.duplicate
        assert other.total_usage == 1

    @pytest.mark.asyncio
    async def test_negative_quantity_rejected(self, service: MeteringService, now: datetime) -> None:
        with pytest.raises(ValidationError, match="quantity"):
            await service.track(_event(now, quantity=-1))

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, service: MeteringService) -> None:
        with pytest.raises(ValidationError, match="metric_id"):
            await service.track({"organization_id": "org-1", "quantity": 1})

    @pytest.mark.asyncio
    async def test_unknown_metric_is_accepted(self, service: MeteringService, now: datetime) -> None:
        result = await service.track(_event(now, metric_id="not_in_catalog"))
        assert result.total_usage == 1

    @pytest.mark.asyncio
    async def test_crossing_a_threshold_raises_alert(
        self, service: MeteringService, limits: LimitEvaluator, now: datetime
    ) -> None:
        await limits.set_limit(UsageLimit(organization_id="org-1", metric_id="api_calls", limit_value=100))

        quiet = await service.track(_event(now, quantity=50))
        loud = await service.track(_event(now, quantity=35))

        assert quiet.alerts == []
        assert [alert.threshold_percentage for alert in loud.alerts] == [80.0]


# ---------------------------------------------------------------------------
# track_batch
# ---------------------------------------------------------------------------


class TestTrackBatch:
    @pytest.mark.asyncio
    async def test_batch_matches_individual_tracking(
        self, service: MeteringService, db_session, now: datetime
    ) -> None:
        quantities = [("api_calls", 3), ("api_calls", 4), ("storage_gb", 1.5), ("api_calls", 0.5)]

        for metric_id, quantity in quantities:
            await service.track(_event(now, metric_id, quantity, organization_id="org-single"))
        result = await service.track_batch(
            [_event(now, metric_id, quantity, organization_id="org-batch") for metric_id, quantity in quantities]
        )

        assert len(result.accepted) == 4
        single = {s.metric_id: s.total_usage for s in await service.get_current_usage("org-single")}
        batch = {s.metric_id: s.total_usage for s in await service.get_current_usage("org-batch")}
        assert single == batch == {"api_calls": 7.5, "storage_gb": 1.5}

        events = UsageEventRepository(db_session)
        assert len(await events.list_range("org-batch", _MARCH.start, _MARCH.end)) == 4

    @pytest.mark.asyncio
    async def test_invalid_entries_are_rejected_individually(self, service: MeteringService, now: datetime) -> None:
        result = await service.track_batch(
            [
                _event(now, quantity=2),
                _event(now, quantity=-3, event_id="evt-bad"),
                {"organization_id": "org-1"},
            ]
        )

        assert len(result.accepted) == 1
        assert [(r.index, r.event_id) for r in result.rejected] == [(1, "evt-bad"), (2, None)]

    @pytest.mark.asyncio
    async def test_duplicates_within_and_across_batches(self, service: MeteringService, now: datetime) -> None:
        await service.track(_event(now, idempotency_key="k1"))

        result = await service.track_batch(
            [
                _event(now, idempotency_key="k1", event_id="evt-a"),
                _event(now, idempotency_key="k2", event_id="evt-b"),
                _event(now, idempotency_key="k2", event_id="evt-c"),
            ]
        )

        assert result.accepted == ["evt-b"]
        assert sorted(result.duplicates) == ["evt-a", "evt-c"]
        (summary,) = await service.get_current_usage("org-1")
        assert summary.total_usage == 2

    @pytest.mark.asyncio
    async def test_failed_group_is_rolled_back_alone(
        self, service: MeteringService, db_session, now: datetime
    ) -> None:
        real_increment = service._summaries.increment

        async def _flaky(organization_id, metric_id, *args):
            if metric_id == "storage_gb":
                raise OperationalError("UPDATE usage_summaries", {}, Exception("disk I/O error"))
            return await real_increment(organization_id, metric_id, *args)

        with patch.object(service._summaries, "increment", AsyncMock(side_effect=_flaky)):
            result = await service.track_batch(
                [
                    _event(now, "api_calls", 2, event_id="evt-1"),
                    _event(now, "storage_gb", 5, event_id="evt-2"),
                ]
            )

        assert result.accepted == ["evt-1"]
        (failed,) = result.failed_groups
        assert failed.metric_id == "storage_gb"
        assert failed.event_ids == ["evt-2"]

        totals = await UsageEventRepository(db_session).sum_by_metric("org-1", _MARCH.start, _MARCH.end)
        assert totals == {"api_calls": 2.0}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_usage_over_arbitrary_period(self, service: MeteringService, now: datetime) -> None:
        await service.track(_event(now - timedelta(days=20), quantity=4))
        await service.track(_event(now, quantity=6))

        window = DateRange(start=now - timedelta(days=1), end=now + timedelta(days=1))
        summary = await service.get_usage("org-1", "api_calls", window)

        assert summary.total_usage == 6
        assert summary.metric_name == "api_calls"
        assert summary.current_cost is None

    @pytest.mark.asyncio
    async def test_current_usage_includes_cost_under_active_plan(
        self, service: MeteringService, catalog: PlanCatalog, starter_plan, now: datetime
    ) -> None:
        await catalog.register_plan(starter_plan)
        await catalog.subscribe("org-1", starter_plan.id)
        await service.register_metric(UsageMetric(id="api_calls", name="API Calls", unit="calls"))
        await service.track(_event(now, quantity=1500))

        (summary,) = await service.get_current_usage("org-1")
        assert summary.metric_name == "API Calls"
        assert summary.unit == "calls"
        # 1000 free, then 500 x $0.01.
        assert summary.current_cost == pytest.approx(5.0)


# ---------------------------------------------------------------------------
# Metric catalog
# ---------------------------------------------------------------------------


class TestMetricCatalog:
    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, service: MeteringService) -> None:
        metric = UsageMetric(id="api_calls", name="API Calls", unit="calls")
        await service.register_metric(metric)
        await service.register_metric(metric)
        assert await service.list_metrics() == [metric]

    @pytest.mark.asyncio
    async def test_conflicting_registration_rejected(self, service: MeteringService) -> None:
        await service.register_metric(UsageMetric(id="api_calls", name="API Calls", unit="calls"))
        with pytest.raises(ValidationError, match="already registered"):
            await service.register_metric(UsageMetric(id="api_calls", name="API Calls", unit="requests"))

    @pytest.mark.asyncio
    async def test_get_metric(self, service: MeteringService) -> None:
        metric = UsageMetric(id="api_calls", name="API Calls", unit="calls")
        await service.register_metric(metric)

        assert await service.get_metric("api_calls") == metric
        with pytest.raises(MetricNotFoundError):
            await service.get_metric("storage_gb")


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


class _SerializationFailure(Exception):
    sqlstate = "40001"


class TestTranslateStoreError:
    def test_serialization_failure_is_a_concurrency_conflict(self) -> None:
        exc = OperationalError("UPDATE usage_summaries", {}, _SerializationFailure("could not serialize"))
        assert isinstance(translate_store_error(exc), ConcurrencyConflictError)

    def test_other_failures_are_store_errors(self) -> None:
        exc = OperationalError("SELECT 1", {}, Exception("connection refused"))
        assert isinstance(translate_store_error(exc), StoreError)

    @pytest.mark.asyncio
    async def test_track_surfaces_store_error(self, mock_session, now: datetime) -> None:
        mock_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("gone")))
        service = MeteringService(mock_session)
        with pytest.raises(StoreError):
            await service.track(_event(now, idempotency_key="k1"))
