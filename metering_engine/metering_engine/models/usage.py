"""Usage events, aggregates, limits and alerts."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Sentinel limit value meaning "no limit".
UNLIMITED = -1.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalise_thresholds(thresholds: list[float]) -> list[float]:
    """Sort and de-duplicate alert thresholds, each a percentage in (0, 100]."""
    if any(t <= 0 or t > 100 for t in thresholds):
        raise ValueError("thresholds must be percentages in (0, 100]")
    return sorted(set(thresholds))


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class LimitType(str, Enum):
    HARD = "hard"
    SOFT = "soft"
    BILLING_ONLY = "billing_only"


class ResetPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AlertType(str, Enum):
    THRESHOLD_EXCEEDED = "threshold_exceeded"
    LIMIT_EXCEEDED = "limit_exceeded"
    ANOMALY_DETECTED = "anomaly_detected"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @classmethod
    def for_percentage(cls, percentage: float) -> AlertSeverity:
        """Map a usage percentage onto a severity: >=95 critical, >=80 warning."""
        if percentage >= 95.0:
            return cls.CRITICAL
        if percentage >= 80.0:
            return cls.WARNING
        return cls.INFO


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


class ExportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Catalog and events
# ---------------------------------------------------------------------------


class UsageMetric(BaseModel):
    """Immutable catalog entry describing a countable unit of usage."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=256)
    unit: str = Field(default="units", min_length=1, max_length=64)
    description: str | None = None


class UsageEvent(BaseModel):
    """A single usage occurrence for an organization and metric.

    Events are append-only.  ``quantity`` may be fractional (e.g. GB of
    storage) but never negative.  When ``idempotency_key`` is set, a
    second event with the same key for the same organization is treated
    as a duplicate and not counted.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:16]}")
    organization_id: str = Field(..., min_length=1, max_length=128)
    metric_id: str = Field(..., min_length=1, max_length=128)
    quantity: float = Field(..., ge=0, allow_inf_nan=False)
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, max_length=256)

    @field_validator("timestamp")
    @classmethod
    def _normalise_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)


class UsageSummary(BaseModel):
    """Aggregated usage of one metric for one organization over a period."""

    organization_id: str
    metric_id: str
    metric_name: str = ""
    period_start: datetime
    period_end: datetime
    total_usage: float = Field(default=0.0, ge=0)
    unit: str = "units"
    # Derived from the active plan; not authoritative until invoiced.
    current_cost: float | None = None

    @model_validator(mode="after")
    def _default_name(self) -> Self:
        if not self.metric_name:
            self.metric_name = self.metric_id
        return self


# ---------------------------------------------------------------------------
# Limits and alerts
# ---------------------------------------------------------------------------


class UsageLimit(BaseModel):
    """A configured usage limit for an organization's metric."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    organization_id: str = Field(..., min_length=1)
    metric_id: str = Field(..., min_length=1)
    limit_type: LimitType = LimitType.SOFT
    limit_value: float
    reset_period: ResetPeriod = ResetPeriod.MONTHLY
    thresholds: list[float] = Field(default_factory=lambda: [80.0, 100.0])
    is_active: bool = True

    @field_validator("limit_value")
    @classmethod
    def _check_limit_value(cls, v: float) -> float:
        if v != UNLIMITED and v <= 0:
            raise ValueError("limit_value must be positive, or -1 for unlimited")
        return v

    @field_validator("thresholds")
    @classmethod
    def _normalise_thresholds(cls, v: list[float]) -> list[float]:
        return normalise_thresholds(v)

    @property
    def is_unlimited(self) -> bool:
        return self.limit_value == UNLIMITED


class LimitStatus(BaseModel):
    """A limit merged with its current usage window."""

    limit: UsageLimit
    current_usage: float
    percentage_used: float
    is_over_limit: bool
    window_start: datetime
    window_end: datetime


class UsageAlert(BaseModel):
    id: str
    organization_id: str
    metric_id: str
    alert_type: AlertType
    threshold_percentage: float
    current_usage: float
    limit_value: float
    severity: AlertSeverity
    message: str = ""
    resolved: bool = False
    created_at: datetime
    resolved_at: datetime | None = None


class UsageExport(BaseModel):
    """Status record for an asynchronous usage export."""

    id: str
    organization_id: str
    period_start: datetime
    period_end: datetime
    format: ExportFormat
    status: ExportStatus
    row_count: int | None = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
