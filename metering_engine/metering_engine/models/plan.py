"""Plan catalog models: pricing rules, tiers and limit templates."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from metering_engine.models.usage import UNLIMITED, LimitType, ResetPeriod, normalise_thresholds


class PricingModel(str, Enum):
    """How billable usage of a metric is converted into cost."""

    PER_UNIT = "per_unit"
    TIERED = "tiered"
    VOLUME = "volume"
    GRADUATED = "graduated"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class Tier(BaseModel):
    """A usage range priced at its own unit price plus an optional flat fee.

    ``to`` of ``None`` means the tier is unbounded.  Serialised with the
    keys ``from`` / ``to``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: float = Field(..., alias="from", ge=0)
    to: float | None = None
    unit_price: float = Field(..., ge=0)
    flat_fee: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> Self:
        if self.to is not None and self.to <= self.from_:
            raise ValueError(f"tier upper bound {self.to} must exceed lower bound {self.from_}")
        return self


class PricingRule(BaseModel):
    """Pricing for a single metric within a plan."""

    model_config = ConfigDict(frozen=True)

    metric_id: str = Field(..., min_length=1)
    model: PricingModel = PricingModel.PER_UNIT
    free_tier: float | None = Field(default=None, ge=0)
    unit_price: float | None = Field(default=None, ge=0)
    tiers: list[Tier] = Field(default_factory=list)


class UsageLimitTemplate(BaseModel):
    """Limit applied to every organization subscribing to a plan."""

    model_config = ConfigDict(frozen=True)

    metric_id: str = Field(..., min_length=1)
    limit_type: LimitType = LimitType.SOFT
    limit_value: float = UNLIMITED
    reset_period: ResetPeriod = ResetPeriod.MONTHLY
    thresholds: list[float] = Field(default_factory=lambda: [80.0, 100.0])

    @field_validator("thresholds")
    @classmethod
    def _normalise_thresholds(cls, v: list[float]) -> list[float]:
        return normalise_thresholds(v)


class BillingPlan(BaseModel):
    """A versioned plan definition.

    Plans are immutable once registered; a pricing change is published
    under a new plan id.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1)
    description: str | None = None
    base_price: float = Field(default=0.0, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    billing_interval: BillingInterval = BillingInterval.MONTH
    pricing_rules: list[PricingRule] = Field(default_factory=list)
    limit_templates: list[UsageLimitTemplate] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    is_active: bool = True

    @model_validator(mode="after")
    def _unique_rules(self) -> Self:
        metric_ids = [rule.metric_id for rule in self.pricing_rules]
        if len(metric_ids) != len(set(metric_ids)):
            raise ValueError("a plan may define at most one pricing rule per metric")
        return self

    def rule_for(self, metric_id: str) -> PricingRule | None:
        for rule in self.pricing_rules:
            if rule.metric_id == metric_id:
                return rule
        return None
