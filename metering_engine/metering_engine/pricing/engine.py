"""Pricing engine: converts usage summaries into cost under a plan.

Every function here is pure: no I/O, no clock, no global state.  Errors
are intentionally absent.  A metric without a pricing rule is skipped,
an empty tier list prices to zero, and a missing free tier means zero.

Pricing models
--------------
``per_unit``
    ``billable * unit_price``.
``tiered``
    Segmented.  Tiers are walked in ascending ``from`` order with a
    remaining-usage counter; each tier absorbs up to ``to - from`` units
    at its own rate plus its flat fee.
``volume``
    The single highest tier whose ``from`` is at or below the billable
    usage prices *all* of it (rate plus flat fee).
``graduated``
    Cumulative.  Each tier prices the slice of absolute usage that lies
    above its ``from`` and below its ``to``.  For contiguous tiers this
    equals ``tiered``; usage falling in a gap between tiers is unpriced,
    whereas ``tiered`` carries it forward into the next tier.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Mapping, Sequence

from metering_engine.models.billing import (
    DateRange,
    TierUsageBreakdown,
    UsageCostCalculation,
    UsageCostDetail,
)
from metering_engine.models.plan import BillingPlan, PricingModel, PricingRule, Tier
from metering_engine.models.usage import UsageSummary

logger = logging.getLogger(__name__)

BASE_SUBSCRIPTION_LABEL = "Base Subscription"

# Internal precision; invoices round to cents.
_PRECISION = 6

TierPricing = tuple[float, list[TierUsageBreakdown]]


def _round(value: float) -> float:
    return round(value, _PRECISION)


def _sorted_tiers(tiers: Iterable[Tier]) -> list[Tier]:
    return sorted(tiers, key=lambda tier: tier.from_)


def _upper(tier: Tier) -> float:
    return math.inf if tier.to is None else tier.to


def _charge(tier: Tier, usage_in_tier: float) -> TierUsageBreakdown:
    flat_fee = tier.flat_fee or 0.0
    return TierUsageBreakdown(
        tier_from=tier.from_,
        tier_to=tier.to,
        usage_in_tier=usage_in_tier,
        unit_price=tier.unit_price,
        flat_fee=flat_fee,
        tier_cost=_round(usage_in_tier * tier.unit_price + flat_fee),
    )


# ---------------------------------------------------------------------------
# Tier algorithms
# ---------------------------------------------------------------------------


def price_tiered(usage: float, tiers: Sequence[Tier]) -> TierPricing:
    """Segmented pricing driven by a remaining-usage counter."""
    remaining = usage
    total = 0.0
    breakdown: list[TierUsageBreakdown] = []

    for tier in _sorted_tiers(tiers):
        if remaining <= 0:
            break
        usage_in_tier = min(remaining, _upper(tier) - tier.from_)
        if usage_in_tier <= 0:
            continue
        entry = _charge(tier, usage_in_tier)
        breakdown.append(entry)
        total += entry.tier_cost
        remaining -= usage_in_tier

    return total, breakdown


def price_volume(usage: float, tiers: Sequence[Tier]) -> TierPricing:
    """Charge all usage at the rate of the highest tier it reaches."""
    for tier in reversed(_sorted_tiers(tiers)):
        if usage >= tier.from_:
            entry = _charge(tier, usage)
            return entry.tier_cost, [entry]
    return 0.0, []


def price_graduated(usage: float, tiers: Sequence[Tier]) -> TierPricing:
    """Cumulative pricing matched against absolute usage."""
    processed = 0.0
    total = 0.0
    breakdown: list[TierUsageBreakdown] = []

    for tier in _sorted_tiers(tiers):
        if usage <= tier.from_:
            break
        usage_in_tier = min(usage - tier.from_, _upper(tier) - tier.from_)
        if usage_in_tier <= 0:
            continue
        entry = _charge(tier, usage_in_tier)
        breakdown.append(entry)
        total += entry.tier_cost
        processed += usage_in_tier
        if processed >= usage:
            break

    return total, breakdown


_TIER_ALGORITHMS: dict[PricingModel, Callable[[float, Sequence[Tier]], TierPricing]] = {
    PricingModel.TIERED: price_tiered,
    PricingModel.VOLUME: price_volume,
    PricingModel.GRADUATED: price_graduated,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def calculate_metric_cost(summary: UsageSummary, rule: PricingRule) -> UsageCostDetail:
    """Price one usage summary under one pricing rule.

    The free tier is subtracted first and billable usage is floored at
    zero.  Zero billable usage costs nothing under every model, flat
    fees included.

    Parameters
    ----------
    summary:
        Aggregated usage for a single metric.
    rule:
        The plan's pricing rule for that metric.

    Returns
    -------
    UsageCostDetail
        Billable usage, cost and (for tier models) the per-tier breakdown.
        ``unit_price`` is the rule's price for ``per_unit`` and the
        effective average rate for tier models.
    """
    total_usage = max(summary.total_usage, 0.0)
    free_tier = rule.free_tier or 0.0
    billable = max(0.0, total_usage - free_tier)

    breakdown: list[TierUsageBreakdown] = []
    if billable <= 0:
        cost = 0.0
    elif rule.model is PricingModel.PER_UNIT:
        cost = billable * (rule.unit_price or 0.0)
    else:
        cost, breakdown = _TIER_ALGORITHMS[rule.model](billable, rule.tiers)

    if rule.model is PricingModel.PER_UNIT:
        unit_price = rule.unit_price or 0.0
    else:
        unit_price = cost / billable if billable > 0 else 0.0

    return UsageCostDetail(
        metric_id=summary.metric_id,
        metric_name=summary.metric_name,
        unit=summary.unit,
        pricing_model=rule.model,
        total_usage=total_usage,
        free_tier_used=min(total_usage, free_tier),
        billable_usage=billable,
        unit_price=_round(unit_price),
        total_cost=_round(cost),
        tier_breakdown=breakdown,
    )


def calculate_usage_cost(
    summaries: Iterable[UsageSummary],
    plan: BillingPlan,
    period: DateRange,
) -> UsageCostCalculation:
    """Sum the plan's base price and the cost of every priced metric.

    Summaries whose metric has no pricing rule in *plan* are ignored.
    An empty *summaries* yields exactly the base price.
    """
    rules = {rule.metric_id: rule for rule in plan.pricing_rules}
    details: list[UsageCostDetail] = []

    for summary in summaries:
        rule = rules.get(summary.metric_id)
        if rule is None:
            logger.debug("No pricing rule for metric %s on plan %s", summary.metric_id, plan.id)
            continue
        details.append(calculate_metric_cost(summary, rule))

    usage_cost = _round(sum(detail.total_cost for detail in details))
    return UsageCostCalculation(
        base_cost=plan.base_price,
        usage_cost=usage_cost,
        total_cost=_round(plan.base_price + usage_cost),
        currency=plan.currency,
        period=period,
        usage_details=details,
    )


def estimate_plan_cost(
    plan: BillingPlan,
    usage_by_metric: Mapping[str, float],
    period: DateRange,
    *,
    organization_id: str = "",
    metric_names: Mapping[str, str] | None = None,
) -> UsageCostCalculation:
    """Price a hypothetical usage profile under *plan*."""
    names = metric_names or {}
    summaries = [
        UsageSummary(
            organization_id=organization_id,
            metric_id=metric_id,
            metric_name=names.get(metric_id, metric_id),
            period_start=period.start,
            period_end=period.end,
            total_usage=quantity,
        )
        for metric_id, quantity in usage_by_metric.items()
    ]
    return calculate_usage_cost(summaries, plan, period)


def cost_breakdown(calculation: UsageCostCalculation) -> dict[str, float]:
    """Flatten a calculation into ``{label: cost}`` with the base fee first."""
    breakdown: dict[str, float] = {BASE_SUBSCRIPTION_LABEL: calculation.base_cost}
    for detail in calculation.usage_details:
        breakdown[detail.metric_name] = _round(breakdown.get(detail.metric_name, 0.0) + detail.total_cost)
    return breakdown
