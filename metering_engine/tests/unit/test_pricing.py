"""Unit tests for metering_engine.pricing.engine.

Covers:
- per_unit pricing with and without a free tier
- The tiered / volume / graduated models and where they diverge
- Flat fees and empty tier lists
- Plan-level totals, estimates and the cost breakdown
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from metering_engine.models.billing import DateRange
from metering_engine.models.plan import BillingPlan, PricingModel, PricingRule, Tier
from metering_engine.models.usage import UsageSummary
from metering_engine.pricing.engine import (
    BASE_SUBSCRIPTION_LABEL,
    calculate_metric_cost,
    calculate_usage_cost,
    cost_breakdown,
    estimate_plan_cost,
    price_graduated,
    price_tiered,
    price_volume,
)

_PERIOD = DateRange(
    start=datetime(2026, 3, 1, tzinfo=UTC),
    end=datetime(2026, 4, 1, tzinfo=UTC),
)

_TWO_TIERS = [
    Tier(**{"from": 0, "to": 100, "unit_price": 1.0}),
    Tier(**{"from": 100, "to": None, "unit_price": 0.5}),
]


def _summary(metric_id: str, total: float, name: str = "") -> UsageSummary:
    return UsageSummary(
        organization_id="org-1",
        metric_id=metric_id,
        metric_name=name,
        period_start=_PERIOD.start,
        period_end=_PERIOD.end,
        total_usage=total,
    )


def _rule(model: PricingModel, **kwargs) -> PricingRule:
    return PricingRule(metric_id="api_calls", model=model, **kwargs)


# ---------------------------------------------------------------------------
# per_unit
# ---------------------------------------------------------------------------


class TestPerUnit:
    def test_free_tier_is_subtracted_first(self):
        detail = calculate_metric_cost(
            _summary("api_calls", 50),
            _rule(PricingModel.PER_UNIT, unit_price=2.0, free_tier=30),
        )
        assert detail.billable_usage == 20
        assert detail.free_tier_used == 30
        assert detail.total_cost == pytest.approx(40.0)

    def test_usage_within_free_tier_costs_nothing(self):
        detail = calculate_metric_cost(
            _summary("api_calls", 25),
            _rule(PricingModel.PER_UNIT, unit_price=2.0, free_tier=30),
        )
        assert detail.billable_usage == 0
        assert detail.free_tier_used == 25
        assert detail.total_cost == 0.0

    def test_missing_unit_price_prices_to_zero(self):
        detail = calculate_metric_cost(_summary("api_calls", 10), _rule(PricingModel.PER_UNIT))
        assert detail.total_cost == 0.0

    def test_fractional_usage(self):
        detail = calculate_metric_cost(
            _summary("storage_gb", 2.5),
            PricingRule(metric_id="storage_gb", unit_price=0.1),
        )
        assert detail.total_cost == pytest.approx(0.25)
        assert detail.metric_name == "storage_gb"


# ---------------------------------------------------------------------------
# Tier models
# ---------------------------------------------------------------------------


class TestTierModels:
    def test_models_are_distinct_for_contiguous_tiers(self):
        tiered, _ = price_tiered(150, _TWO_TIERS)
        volume, _ = price_volume(150, _TWO_TIERS)
        graduated, _ = price_graduated(150, _TWO_TIERS)

        assert tiered == pytest.approx(125.0)
        assert volume == pytest.approx(75.0)
        assert graduated == pytest.approx(125.0)

    def test_tiered_carries_usage_across_a_gap(self):
        gap = [
            Tier(**{"from": 0, "to": 100, "unit_price": 1.0}),
            Tier(**{"from": 200, "unit_price": 0.5}),
        ]
        tiered, _ = price_tiered(250, gap)
        graduated, _ = price_graduated(250, gap)

        assert tiered == pytest.approx(175.0)
        # Usage between 100 and 200 falls in the gap and is unpriced.
        assert graduated == pytest.approx(125.0)

    def test_overlapping_tiers_diverge(self):
        overlap = [
            Tier(**{"from": 0, "to": 100, "unit_price": 1.0}),
            Tier(**{"from": 50, "unit_price": 0.5}),
        ]
        tiered, _ = price_tiered(150, overlap)
        graduated, _ = price_graduated(150, overlap)

        assert tiered == pytest.approx(125.0)
        assert graduated == pytest.approx(150.0)

    def test_tiers_are_sorted_before_pricing(self):
        reversed_tiers = list(reversed(_TWO_TIERS))
        total, breakdown = price_tiered(150, reversed_tiers)
        assert total == pytest.approx(125.0)
        assert [entry.tier_from for entry in breakdown] == [0, 100]

    def test_volume_below_first_tier_is_free(self):
        tiers = [Tier(**{"from": 10, "unit_price": 1.0})]
        assert price_volume(5, tiers) == (0.0, [])

    def test_flat_fee_added_per_tier_reached(self):
        tiers = [
            Tier(**{"from": 0, "to": 100, "unit_price": 0.0, "flat_fee": 10.0}),
            Tier(**{"from": 100, "unit_price": 0.1, "flat_fee": 5.0}),
        ]
        total, breakdown = price_tiered(150, tiers)
        assert total == pytest.approx(10.0 + 5.0 + 5.0)
        assert [entry.flat_fee for entry in breakdown] == [10.0, 5.0]

    def test_empty_tier_list_prices_to_zero(self):
        detail = calculate_metric_cost(_summary("api_calls", 500), _rule(PricingModel.TIERED))
        assert detail.total_cost == 0.0
        assert detail.tier_breakdown == []

    def test_zero_billable_usage_skips_flat_fees(self):
        tiers = [Tier(**{"from": 0, "unit_price": 1.0, "flat_fee": 25.0})]
        detail = calculate_metric_cost(
            _summary("api_calls", 100),
            _rule(PricingModel.VOLUME, tiers=tiers, free_tier=100),
        )
        assert detail.total_cost == 0.0

    def test_effective_unit_price_for_tier_models(self):
        detail = calculate_metric_cost(_summary("api_calls", 150), _rule(PricingModel.TIERED, tiers=_TWO_TIERS))
        assert detail.unit_price == pytest.approx(125.0 / 150)
        assert len(detail.tier_breakdown) == 2

    def test_invalid_tier_bounds_rejected(self):
        with pytest.raises(ValueError, match="must exceed"):
            Tier(**{"from": 100, "to": 50, "unit_price": 1.0})


# ---------------------------------------------------------------------------
# Plan totals
# ---------------------------------------------------------------------------


def _plan() -> BillingPlan:
    return BillingPlan(
        id="pro-2026",
        name="Pro",
        base_price=49.0,
        pricing_rules=[
            PricingRule(metric_id="api_calls", model=PricingModel.TIERED, tiers=_TWO_TIERS),
            PricingRule(metric_id="storage_gb", unit_price=0.25, free_tier=10),
        ],
    )


class TestPlanCost:
    def test_no_usage_costs_exactly_the_base_price(self):
        calculation = calculate_usage_cost([], _plan(), _PERIOD)
        assert calculation.total_cost == 49.0
        assert calculation.usage_cost == 0.0
        assert calculation.usage_details == []

    def test_usage_and_base_are_summed(self):
        calculation = calculate_usage_cost(
            [_summary("api_calls", 150), _summary("storage_gb", 30)],
            _plan(),
            _PERIOD,
        )
        assert calculation.usage_cost == pytest.approx(125.0 + 5.0)
        assert calculation.total_cost == pytest.approx(49.0 + 130.0)
        assert calculation.currency == "USD"

    def test_unpriced_metrics_are_ignored(self):
        calculation = calculate_usage_cost([_summary("seats", 12)], _plan(), _PERIOD)
        assert calculation.total_cost == 49.0
        assert calculation.usage_details == []

    def test_estimate_uses_metric_names(self):
        calculation = estimate_plan_cost(
            _plan(),
            {"api_calls": 50},
            _PERIOD,
            organization_id="org-1",
            metric_names={"api_calls": "API Calls"},
        )
        assert calculation.usage_details[0].metric_name == "API Calls"
        assert calculation.total_cost == pytest.approx(99.0)

    def test_cost_breakdown_lists_base_first(self):
        calculation = calculate_usage_cost(
            [_summary("api_calls", 150, name="API Calls"), _summary("storage_gb", 30, name="Storage")],
            _plan(),
            _PERIOD,
        )
        breakdown = cost_breakdown(calculation)
        assert list(breakdown) == [BASE_SUBSCRIPTION_LABEL, "API Calls", "Storage"]
        assert breakdown[BASE_SUBSCRIPTION_LABEL] == 49.0
        assert breakdown["Storage"] == pytest.approx(5.0)

    def test_duplicate_rules_rejected(self):
        with pytest.raises(ValueError, match="at most one pricing rule"):
            BillingPlan(
                id="dup",
                name="Dup",
                pricing_rules=[
                    PricingRule(metric_id="api_calls", unit_price=1),
                    PricingRule(metric_id="api_calls", unit_price=2),
                ],
            )
