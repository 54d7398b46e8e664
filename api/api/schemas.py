"""Request and response models for the HTTP API.

Engine models (``UsageSummary``, ``Invoice``, ``UpgradePreview`` ...) are
returned as-is; the schemas here cover request bodies and the few
envelopes the routers add around them.  Request bodies are deliberately
loose: field validation happens in the engine so that HTTP and Python
callers are rejected with the same messages.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import pydantic
from metering_engine.errors import ValidationError
from metering_engine.models.billing import DateRange, Invoice
from metering_engine.models.usage import ExportFormat, LimitType, ResetPeriod
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class UsageEventRequest(BaseModel):
    """Body of ``POST /usage/events``."""

    organization_id: str
    metric_id: str
    quantity: float
    timestamp: datetime | None = None
    event_id: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_event_data(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BatchTrackRequest(BaseModel):
    """Body of ``POST /usage/events/batch``.

    Events are raw objects so that one malformed entry is reported back
    instead of rejecting the whole batch.
    """

    events: list[dict[str, Any]] = Field(..., min_length=1, max_length=1000)


class RegisterMetricRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=256)
    unit: str = Field(default="units", min_length=1, max_length=64)
    description: str | None = None


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


class SetLimitRequest(BaseModel):
    """Body of ``PUT /limits/{org}``.  Replaces the limit for (metric, reset period)."""

    metric_id: str
    limit_type: LimitType = LimitType.SOFT
    limit_value: float
    reset_period: ResetPeriod = ResetPeriod.MONTHLY
    thresholds: list[float] = Field(default_factory=lambda: [80.0, 100.0])
    is_active: bool = True


# ---------------------------------------------------------------------------
# Plans and subscriptions
# ---------------------------------------------------------------------------


class SubscribeRequest(BaseModel):
    organization_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    period_start: datetime | None = None
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    external_item_ids: dict[str, str] = Field(
        default_factory=dict,
        description="Metric id to payment-provider subscription item id.",
    )


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


def make_period(start: datetime, end: datetime) -> DateRange:
    """Build a :class:`DateRange`, rejecting empty or inverted ranges."""
    try:
        return DateRange(start=start, end=end)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid period {start.isoformat()} .. {end.isoformat()}: end must be after start"
        ) from exc


class PeriodRequest(BaseModel):
    start: datetime
    end: datetime

    def to_range(self) -> DateRange:
        return make_period(self.start, self.end)


class CostRequest(PeriodRequest):
    """Body of ``POST /billing/{org}/cost``.  Defaults to the active plan."""

    plan_id: str | None = None


class GenerateInvoiceRequest(BaseModel):
    """Body of ``POST /billing/{org}/invoices``.

    Omitted fields default to the active subscription and its current
    billing period.
    """

    subscription_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None


class InvoiceListResponse(BaseModel):
    items: list[Invoice]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


class ExportRequest(PeriodRequest):
    organization_id: str = Field(..., min_length=1)
    format: ExportFormat = ExportFormat.CSV


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    version: str
    db: str
