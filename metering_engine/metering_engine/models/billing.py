"""Cost calculations, invoices, subscriptions and upgrade previews."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, Field, field_validator, model_validator

from metering_engine.models.plan import PricingModel


class DateRange(BaseModel):
    """Half-open ``[start, end)`` time range in UTC."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return v.replace(tzinfo=UTC) if v.tzinfo is None else v.astimezone(UTC)

    @model_validator(mode="after")
    def _ordered(self) -> Self:
        if self.end <= self.start:
            raise ValueError("period end must be after period start")
        return self


# ---------------------------------------------------------------------------
# Cost calculation
# ---------------------------------------------------------------------------


class TierUsageBreakdown(BaseModel):
    tier_from: float
    tier_to: float | None
    usage_in_tier: float
    unit_price: float
    flat_fee: float = 0.0
    tier_cost: float


class UsageCostDetail(BaseModel):
    """Cost of one metric under one pricing rule."""

    metric_id: str
    metric_name: str
    unit: str
    pricing_model: PricingModel
    total_usage: float
    free_tier_used: float
    billable_usage: float
    unit_price: float
    total_cost: float
    tier_breakdown: list[TierUsageBreakdown] = Field(default_factory=list)


class UsageCostCalculation(BaseModel):
    base_cost: float
    usage_cost: float
    total_cost: float
    currency: str
    period: DateRange
    usage_details: list[UsageCostDetail] = Field(default_factory=list)


class PlanCostEstimate(BaseModel):
    plan_id: str
    plan_name: str
    base_cost: float
    usage_cost: float
    estimated_cost: float
    currency: str
    recommended: bool = False


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Subscription(BaseModel):
    id: str
    organization_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    # metric_id -> payment provider subscription item id
    external_item_ids: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    canceled_at: datetime | None = None


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"

    def can_transition_to(self, target: InvoiceStatus) -> bool:
        return target in _INVOICE_TRANSITIONS[self]


_INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.OPEN}),
    InvoiceStatus.OPEN: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}


class LineItemType(str, Enum):
    SUBSCRIPTION = "subscription"
    USAGE = "usage"


class LineItem(BaseModel):
    description: str
    item_type: LineItemType
    metric_id: str | None = None
    quantity: float
    unit_price: float
    amount: float


class Invoice(BaseModel):
    id: str
    invoice_number: str
    organization_id: str
    subscription_id: str
    period_start: datetime
    period_end: datetime
    currency: str
    base_cost: float
    usage_cost: float
    subtotal: float
    total: float
    amount_paid: float = 0.0
    amount_due: float
    status: InvoiceStatus
    line_items: list[LineItem]
    cost_calculation: UsageCostCalculation
    due_date: datetime
    created_at: datetime
    finalized_at: datetime | None = None
    paid_at: datetime | None = None
    voided_at: datetime | None = None


# ---------------------------------------------------------------------------
# Upgrade preview
# ---------------------------------------------------------------------------


class UpgradePreview(BaseModel):
    """Transient, computed-on-demand preview of a plan switch."""

    organization_id: str
    current_plan_id: str
    current_plan_name: str
    target_plan_id: str
    target_plan_name: str
    currency: str
    prorated_amount: float = Field(..., ge=0)
    projected_next_cycle_amount: float
    projected_cost: UsageCostCalculation
    effective_date: datetime
    remaining_days: int
    total_days: int
    description: str
