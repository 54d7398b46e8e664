"""Plan catalog, subscriptions and plan cost comparison.

Plans are immutable per id: registering the same document twice is a
no-op and registering a different document under an existing id is
rejected.  Pricing changes are published under a new plan id and
organizations move to it through :meth:`PlanCatalog.subscribe`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from metering_engine.config import Settings, load_settings
from metering_engine.errors import NoActiveSubscriptionError, PlanNotFoundError, ValidationError
from metering_engine.metering.periods import add_interval, ensure_utc
from metering_engine.models.billing import DateRange, PlanCostEstimate, Subscription
from metering_engine.models.plan import BillingPlan
from metering_engine.pricing.engine import estimate_plan_cost
from metering_engine.state.repository import (
    PlanRepository,
    SubscriptionRepository,
    UsageEventRepository,
    UsageMetricRepository,
    plan_from_row,
    subscription_from_row,
)
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.event_bus import EventBus, EventType
from api.services.limit_service import LimitEvaluator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _definition(plan: BillingPlan) -> dict:
    return plan.model_dump(mode="json", by_alias=True)


class PlanCatalog:
    """Shared plan definitions and per-organization subscriptions."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        event_bus: EventBus | None = None,
        limit_evaluator: LimitEvaluator | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._bus = event_bus
        self._limits = limit_evaluator
        self._settings = settings or load_settings()
        self._clock = clock
        self._plans = PlanRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._events = UsageEventRepository(session)
        self._metrics = UsageMetricRepository(session)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def register_plan(self, plan: BillingPlan) -> BillingPlan:
        """Add *plan* to the catalog, idempotently."""
        row = await self._plans.get(plan.id)
        if row is not None:
            existing = plan_from_row(row)
            if _definition(existing) != _definition(plan):
                raise ValidationError(
                    f"Plan {plan.id} is already registered with different content; publish it under a new plan id"
                )
            return existing

        await self._plans.create(plan)
        logger.info(
            "Registered plan %s (%s %.2f/%s, %d pricing rule(s))",
            plan.id,
            plan.currency,
            plan.base_price,
            plan.billing_interval.value,
            len(plan.pricing_rules),
        )
        return plan

    async def get_plan(self, plan_id: str) -> BillingPlan:
        row = await self._plans.get(plan_id)
        if row is None:
            raise PlanNotFoundError(plan_id)
        return plan_from_row(row)

    async def list_plans(self, active_only: bool = True) -> list[BillingPlan]:
        return [plan_from_row(row) for row in await self._plans.list_plans(active_only=active_only)]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        organization_id: str,
        plan_id: str,
        period_start: datetime | None = None,
        *,
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
        external_item_ids: dict[str, str] | None = None,
    ) -> Subscription:
        """Start a subscription to *plan_id*, replacing any active one.

        The period ends one billing interval after *period_start* (default
        now).  The plan's limit templates are applied to the organization.
        """
        plan = await self.get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError(f"Plan {plan_id} is not available for new subscriptions")

        now = ensure_utc(self._clock())
        start = ensure_utc(period_start) if period_start is not None else now
        end = add_interval(start, plan.billing_interval)

        previous = await self._subscriptions.get_active(organization_id)
        if previous is not None:
            await self._subscriptions.cancel(previous.subscription_id, now)
            logger.info(
                "Canceled subscription %s (plan %s) for org=%s",
                previous.subscription_id,
                previous.plan_id,
                organization_id,
            )

        row = await self._subscriptions.create(
            subscription_id=uuid.uuid4().hex,
            organization_id=organization_id,
            plan_id=plan.id,
            period_start=start,
            period_end=end,
            external_customer_id=external_customer_id,
            external_subscription_id=external_subscription_id,
            external_item_ids=external_item_ids,
        )
        subscription = subscription_from_row(row)

        if self._limits is not None:
            await self._limits.apply_plan_limits(organization_id, plan)

        logger.info("Org %s subscribed to plan %s (%s)", organization_id, plan.id, subscription.id)
        if self._bus is not None:
            await self._bus.emit(
                EventType.SUBSCRIPTION_CHANGED,
                organization_id=organization_id,
                data={
                    "subscription_id": subscription.id,
                    "plan_id": plan.id,
                    "previous_plan_id": previous.plan_id if previous is not None else None,
                },
            )
        return subscription

    async def get_active_subscription(self, organization_id: str) -> Subscription:
        row = await self._subscriptions.get_active(organization_id)
        if row is None:
            raise NoActiveSubscriptionError(organization_id)
        return subscription_from_row(row)

    async def find_active_plan(self, organization_id: str) -> tuple[Subscription, BillingPlan] | None:
        """Return the active subscription and its plan, or ``None``."""
        row = await self._subscriptions.get_active(organization_id)
        if row is None:
            return None
        plan_row = await self._plans.get(row.plan_id)
        if plan_row is None:
            logger.warning("Subscription %s references missing plan %s", row.subscription_id, row.plan_id)
            return None
        return subscription_from_row(row), plan_from_row(plan_row)

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    async def compare_plans(self, organization_id: str) -> list[PlanCostEstimate]:
        """Price the organization's recent usage under every active plan.

        Uses the last ``upgrade_lookback_days`` days of usage.  Results are
        sorted cheapest first and the cheapest plan is flagged as
        recommended.
        """
        now = ensure_utc(self._clock())
        period = DateRange(start=now - timedelta(days=self._settings.upgrade_lookback_days), end=now)
        usage = await self._events.sum_by_metric(organization_id, period.start, period.end)
        catalog = await self._metrics.lookup(usage)
        names = {metric_id: row.name for metric_id, row in catalog.items()}

        estimates: list[PlanCostEstimate] = []
        for plan in await self.list_plans(active_only=True):
            calculation = estimate_plan_cost(plan, usage, period, organization_id=organization_id, metric_names=names)
            estimates.append(
                PlanCostEstimate(
                    plan_id=plan.id,
                    plan_name=plan.name,
                    base_cost=round(calculation.base_cost, 2),
                    usage_cost=round(calculation.usage_cost, 2),
                    estimated_cost=round(calculation.total_cost, 2),
                    currency=plan.currency,
                )
            )

        estimates.sort(key=lambda estimate: (estimate.estimated_cost, estimate.plan_id))
        if estimates:
            estimates[0] = estimates[0].model_copy(update={"recommended": True})
        return estimates
