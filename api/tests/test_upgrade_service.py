"""Tests for api/api/services/upgrade_service.py"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from metering_engine.errors import NoActiveSubscriptionError, PlanNotFoundError
from metering_engine.models.usage import UsageEvent
from metering_engine.state.repository import UsageEventRepository

from api.services.plan_catalog import PlanCatalog
from api.services.upgrade_service import UpgradePreviewer

_MARCH_1 = datetime(2026, 3, 1, tzinfo=UTC)


@pytest.fixture()
def catalog(db_session, engine_settings, clock) -> PlanCatalog:
    return PlanCatalog(db_session, settings=engine_settings, clock=clock)


@pytest.fixture()
def previewer(db_session, engine_settings, clock) -> UpgradePreviewer:
    return UpgradePreviewer(db_session, settings=engine_settings, clock=clock)


async def _setup(catalog: PlanCatalog, db_session, starter_plan, pro_plan, current_plan_id: str) -> None:
    await catalog.register_plan(starter_plan)
    await catalog.register_plan(pro_plan)
    await catalog.subscribe("org-1", current_plan_id, _MARCH_1)
    await UsageEventRepository(db_session).append(
        [
            UsageEvent(
                organization_id="org-1",
                metric_id="api_calls",
                quantity=12_000,
                timestamp=datetime(2026, 3, 10, tzinfo=UTC),
            ),
            # Older than the lookback window.
            UsageEvent(
                organization_id="org-1",
                metric_id="api_calls",
                quantity=50_000,
                timestamp=datetime(2026, 2, 1, tzinfo=UTC),
            ),
        ]
    )


class TestPreviewUpgrade:
    @pytest.mark.asyncio
    async def test_upgrade_is_prorated(
        self, previewer: UpgradePreviewer, catalog: PlanCatalog, db_session, starter_plan, pro_plan, now
    ) -> None:
        await _setup(catalog, db_session, starter_plan, pro_plan, starter_plan.id)

        preview = await previewer.preview_upgrade("org-1", pro_plan.id)

        # March has 31 days; 16.5 days remain at noon on the 15th, rounded up.
        assert (preview.total_days, preview.remaining_days) == (31, 17)
        # (40 - 10) / 31 x 17
        assert preview.prorated_amount == 16.45
        assert preview.effective_date == now
        assert preview.description == (
            "You'll be charged $16.45 today for the upgrade, then $40.00 on your next billing cycle."
        )

    @pytest.mark.asyncio
    async def test_projection_prices_recent_usage_on_target_plan(
        self, previewer: UpgradePreviewer, catalog: PlanCatalog, db_session, starter_plan, pro_plan
    ) -> None:
        await _setup(catalog, db_session, starter_plan, pro_plan, starter_plan.id)

        preview = await previewer.preview_upgrade("org-1", pro_plan.id)

        # 40 + 10_000 x 0.005 + 2_000 x 0.002
        assert preview.projected_next_cycle_amount == 94.0
        assert preview.projected_cost.period.start == datetime(2026, 4, 1, tzinfo=UTC)
        assert preview.projected_cost.period.end == datetime(2026, 5, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_downgrade_is_never_negative(
        self, previewer: UpgradePreviewer, catalog: PlanCatalog, db_session, starter_plan, pro_plan
    ) -> None:
        await _setup(catalog, db_session, starter_plan, pro_plan, pro_plan.id)

        preview = await previewer.preview_upgrade("org-1", starter_plan.id)

        assert preview.prorated_amount == 0.0
        assert preview.description == "Your next billing cycle will be $10.00."
        # 10 + (12_000 - 1_000) x 0.01
        assert preview.projected_next_cycle_amount == 120.0

    @pytest.mark.asyncio
    async def test_requires_active_subscription(self, previewer: UpgradePreviewer, pro_plan) -> None:
        with pytest.raises(NoActiveSubscriptionError):
            await previewer.preview_upgrade("org-1", pro_plan.id)

    @pytest.mark.asyncio
    async def test_unknown_target_plan(
        self, previewer: UpgradePreviewer, catalog: PlanCatalog, starter_plan
    ) -> None:
        await catalog.register_plan(starter_plan)
        await catalog.subscribe("org-1", starter_plan.id, _MARCH_1)

        with pytest.raises(PlanNotFoundError):
            await previewer.preview_upgrade("org-1", "enterprise")
