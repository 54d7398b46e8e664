"""Upgrade previews: proration and next-cycle projection for a plan switch."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from metering_engine.config import Settings, load_settings
from metering_engine.errors import NoActiveSubscriptionError, PlanNotFoundError
from metering_engine.metering.periods import add_interval, ensure_utc
from metering_engine.models.billing import DateRange, UpgradePreview
from metering_engine.pricing.engine import estimate_plan_cost
from metering_engine.state.repository import (
    PlanRepository,
    SubscriptionRepository,
    UsageEventRepository,
    UsageMetricRepository,
    plan_from_row,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta / _DAY)


class UpgradePreviewer:
    """Compute what switching to another plan would cost.

    Nothing is persisted: a preview is recomputed on every call.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings or load_settings()
        self._clock = clock
        self._subscriptions = SubscriptionRepository(session)
        self._plans = PlanRepository(session)
        self._events = UsageEventRepository(session)
        self._metrics = UsageMetricRepository(session)

    async def preview_upgrade(self, organization_id: str, target_plan_id: str) -> UpgradePreview:
        """Preview the switch of *organization_id* to *target_plan_id*.

        The prorated amount is the difference in daily base price over the
        days left in the current period, and is never negative.  The
        projection prices the last ``upgrade_lookback_days`` of usage under
        the target plan for the cycle that follows the current one.

        Raises
        ------
        NoActiveSubscriptionError
            The organization has no active subscription.
        PlanNotFoundError
            The current or target plan is missing.
        """
        subscription = await self._subscriptions.get_active(organization_id)
        if subscription is None:
            raise NoActiveSubscriptionError(organization_id)

        current_row = await self._plans.get(subscription.plan_id)
        if current_row is None:
            raise PlanNotFoundError(subscription.plan_id)
        target_row = await self._plans.get(target_plan_id)
        if target_row is None:
            raise PlanNotFoundError(target_plan_id)
        current = plan_from_row(current_row)
        target = plan_from_row(target_row)

        now = ensure_utc(self._clock())
        period_start = ensure_utc(subscription.current_period_start)
        period_end = ensure_utc(subscription.current_period_end)

        total_days = max(1, _ceil_days(period_end - period_start))
        remaining_days = min(max(0, _ceil_days(period_end - now)), total_days)

        current_daily = current.base_price / total_days
        target_daily = target.base_price / total_days
        prorated = max(0.0, round((target_daily - current_daily) * remaining_days, 2))

        lookback = DateRange(start=now - timedelta(days=self._settings.upgrade_lookback_days), end=now)
        usage = await self._events.sum_by_metric(organization_id, lookback.start, lookback.end)
        catalog = await self._metrics.lookup(usage)
        next_cycle = DateRange(start=period_end, end=add_interval(period_end, target.billing_interval))
        projected = estimate_plan_cost(
            target,
            usage,
            next_cycle,
            organization_id=organization_id,
            metric_names={metric_id: row.name for metric_id, row in catalog.items()},
        )

        next_charge = f"${target.base_price:.2f}"
        if prorated > 0:
            description = (
                f"You'll be charged ${prorated:.2f} today for the upgrade, "
                f"then {next_charge} on your next billing cycle."
            )
        else:
            description = f"Your next billing cycle will be {next_charge}."

        logger.debug(
            "Upgrade preview org=%s %s -> %s: prorated=%.2f remaining=%d/%d",
            organization_id,
            current.id,
            target.id,
            prorated,
            remaining_days,
            total_days,
        )
        return UpgradePreview(
            organization_id=organization_id,
            current_plan_id=current.id,
            current_plan_name=current.name,
            target_plan_id=target.id,
            target_plan_name=target.name,
            currency=target.currency,
            prorated_amount=prorated,
            projected_next_cycle_amount=round(projected.total_cost, 2),
            projected_cost=projected,
            effective_date=now,
            remaining_days=remaining_days,
            total_days=total_days,
            description=description,
        )
