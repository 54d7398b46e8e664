"""Tests for api/api/services/plan_catalog.py"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from metering_engine.errors import NoActiveSubscriptionError, PlanNotFoundError, ValidationError
from metering_engine.models.billing import SubscriptionStatus
from metering_engine.models.plan import BillingPlan
from metering_engine.models.usage import UsageEvent
from metering_engine.state.repository import UsageEventRepository

from api.services.event_bus import EventType
from api.services.limit_service import LimitEvaluator
from api.services.plan_catalog import PlanCatalog


@pytest.fixture()
def catalog(db_session, event_bus, engine_settings, clock) -> PlanCatalog:
    limits = LimitEvaluator(db_session, event_bus=event_bus, settings=engine_settings, clock=clock)
    return PlanCatalog(db_session, event_bus=event_bus, limit_evaluator=limits, settings=engine_settings, clock=clock)


class TestPlanRegistration:
    @pytest.mark.asyncio
    async def test_register_and_get(self, catalog: PlanCatalog, pro_plan: BillingPlan) -> None:
        await catalog.register_plan(pro_plan)
        stored = await catalog.get_plan(pro_plan.id)

        assert stored == pro_plan
        assert stored.rule_for("api_calls").tiers[1].to is None

    @pytest.mark.asyncio
    async def test_identical_registration_is_a_no_op(self, catalog: PlanCatalog, pro_plan: BillingPlan) -> None:
        await catalog.register_plan(pro_plan)
        await catalog.register_plan(pro_plan)
        assert [plan.id for plan in await catalog.list_plans()] == [pro_plan.id]

    @pytest.mark.asyncio
    async def test_changed_content_needs_a_new_id(self, catalog: PlanCatalog, pro_plan: BillingPlan) -> None:
        await catalog.register_plan(pro_plan)
        with pytest.raises(ValidationError, match="new plan id"):
            await catalog.register_plan(pro_plan.model_copy(update={"base_price": 45.0}))

    @pytest.mark.asyncio
    async def test_unknown_plan(self, catalog: PlanCatalog) -> None:
        with pytest.raises(PlanNotFoundError):
            await catalog.get_plan("enterprise")

    @pytest.mark.asyncio
    async def test_inactive_plans_are_hidden_by_default(self, catalog: PlanCatalog, starter_plan) -> None:
        await catalog.register_plan(starter_plan)
        await catalog.register_plan(BillingPlan(id="legacy-2019", name="Legacy", base_price=5, is_active=False))

        assert [plan.id for plan in await catalog.list_plans()] == [starter_plan.id]
        assert len(await catalog.list_plans(active_only=False)) == 2


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_sets_period_and_limits(self, catalog: PlanCatalog, starter_plan) -> None:
        await catalog.register_plan(starter_plan)
        subscription = await catalog.subscribe("org-1", starter_plan.id, datetime(2026, 1, 31, tzinfo=UTC))

        assert subscription.status is SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == datetime(2026, 2, 28, tzinfo=UTC)
        limits = await catalog._limits.list_limits("org-1")
        assert [(limit.metric_id, limit.limit_value) for limit in limits] == [("api_calls", 10_000)]

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_active(
        self, catalog: PlanCatalog, starter_plan, pro_plan, recorded_events
    ) -> None:
        await catalog.register_plan(starter_plan)
        await catalog.register_plan(pro_plan)
        first = await catalog.subscribe("org-1", starter_plan.id)
        second = await catalog.subscribe("org-1", pro_plan.id)

        active = await catalog.get_active_subscription("org-1")
        assert active.id == second.id != first.id
        assert active.plan_id == pro_plan.id

        changes = [e for e in recorded_events if e.event_type is EventType.SUBSCRIPTION_CHANGED]
        assert changes[-1].data["previous_plan_id"] == starter_plan.id

    @pytest.mark.asyncio
    async def test_inactive_plan_cannot_be_subscribed(self, catalog: PlanCatalog) -> None:
        await catalog.register_plan(BillingPlan(id="legacy-2019", name="Legacy", is_active=False))
        with pytest.raises(ValidationError, match="not available"):
            await catalog.subscribe("org-1", "legacy-2019")

    @pytest.mark.asyncio
    async def test_no_active_subscription(self, catalog: PlanCatalog) -> None:
        with pytest.raises(NoActiveSubscriptionError):
            await catalog.get_active_subscription("org-1")
        assert await catalog.find_active_plan("org-1") is None


class TestComparePlans:
    @pytest.mark.asyncio
    async def test_cheapest_plan_is_recommended(
        self, catalog: PlanCatalog, db_session, starter_plan, pro_plan, now
    ) -> None:
        await catalog.register_plan(starter_plan)
        await catalog.register_plan(pro_plan)
        await UsageEventRepository(db_session).append(
            [
                UsageEvent(
                    organization_id="org-1",
                    metric_id="api_calls",
                    quantity=20_000,
                    timestamp=now - timedelta(days=3),
                )
            ]
        )

        estimates = await catalog.compare_plans("org-1")

        # Starter: 10 + 19_000 x 0.01 = 200.  Pro: 40 + 10_000 x 0.005 + 10_000 x 0.002 = 110.
        assert [(e.plan_id, e.estimated_cost) for e in estimates] == [("pro-2026", 110.0), ("starter-2026", 200.0)]
        assert estimates[0].recommended
        assert not estimates[1].recommended

    @pytest.mark.asyncio
    async def test_no_usage_costs_the_base_price(self, catalog: PlanCatalog, starter_plan) -> None:
        await catalog.register_plan(starter_plan)
        (estimate,) = await catalog.compare_plans("org-1")
        assert estimate.estimated_cost == 10.0
        assert estimate.usage_cost == 0.0
