"""Pure pricing calculations."""

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

__all__ = [
    "BASE_SUBSCRIPTION_LABEL",
    "calculate_metric_cost",
    "calculate_usage_cost",
    "cost_breakdown",
    "estimate_plan_cost",
    "price_graduated",
    "price_tiered",
    "price_volume",
]
