"""SQLAlchemy 2.0 ORM table definitions for the metering state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.

Money columns are ``Numeric(14, 4)`` surfaced as ``float``; quantities
are plain floats because usage may be fractional.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

_Money = Numeric(14, 4, asdecimal=False)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all metering tables."""


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class UsageMetricTable(Base):
    """Catalog of metrics.  Rows are never updated once written."""

    __tablename__ = "usage_metrics"

    metric_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    unit: Mapped[str] = mapped_column(String(64), nullable=False, default="units")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class UsageEventTable(Base):
    """Append-only usage event log.

    ``(organization_id, idempotency_key)`` is unique; rows without a key
    are never considered duplicates.
    """

    __tablename__ = "usage_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    metric_id: Mapped[str] = mapped_column(String(128), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_usage_events_quantity"),
        Index("ix_usage_events_org_metric_time", "organization_id", "metric_id", "occurred_at"),
        Index("ix_usage_events_org_time", "organization_id", "occurred_at"),
        Index("uq_usage_events_idempotency", "organization_id", "idempotency_key", unique=True),
    )


class UsageSummaryTable(Base):
    """Running aggregate per (organization, metric, calendar month).

    ``total_usage`` is only ever changed by an atomic in-database
    increment.  ``reported_usage`` tracks how much of it has already been
    pushed to the payment provider.
    """

    __tablename__ = "usage_summaries"

    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    metric_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_usage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reported_usage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        PrimaryKeyConstraint("organization_id", "metric_id", "period_start"),
        Index("ix_usage_summaries_org_period", "organization_id", "period_start"),
    )


class UsageLimitTable(Base):
    """Per-organization usage limits."""

    __tablename__ = "usage_limits"

    limit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    metric_id: Mapped[str] = mapped_column(String(128), nullable=False)
    limit_type: Mapped[str] = mapped_column(String(32), nullable=False)
    limit_value: Mapped[float] = mapped_column(Float, nullable=False)
    reset_period: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    thresholds_json: Mapped[list[float]] = mapped_column(_JsonType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "limit_type IN ('hard','soft','billing_only')",
            name="ck_usage_limits_type",
        ),
        CheckConstraint(
            "reset_period IN ('daily','weekly','monthly','yearly')",
            name="ck_usage_limits_reset",
        ),
        UniqueConstraint("organization_id", "metric_id", "reset_period", name="uq_usage_limits_scope"),
    )


class UsageAlertTable(Base):
    """Alerts raised by limit evaluation.

    The partial unique index guarantees at most one unresolved alert per
    (organization, metric, alert type).
    """

    __tablename__ = "usage_alerts"

    alert_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    metric_id: Mapped[str] = mapped_column(String(128), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    threshold_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    current_usage: Mapped[float] = mapped_column(Float, nullable=False)
    limit_value: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "alert_type IN ('threshold_exceeded','limit_exceeded','anomaly_detected')",
            name="ck_usage_alerts_type",
        ),
        CheckConstraint("severity IN ('info','warning','critical')", name="ck_usage_alerts_severity"),
        Index(
            "uq_usage_alerts_unresolved",
            "organization_id",
            "metric_id",
            "alert_type",
            unique=True,
            postgresql_where=text("NOT resolved"),
            sqlite_where=text("resolved = 0"),
        ),
        Index("ix_usage_alerts_org_created", "organization_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Plans and subscriptions
# ---------------------------------------------------------------------------


class BillingPlanTable(Base):
    """Plan catalog.  ``definition_json`` holds the full plan document."""

    __tablename__ = "billing_plans"

    plan_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    base_price: Mapped[float] = mapped_column(_Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False, default="month")
    definition_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SubscriptionTable(Base):
    """Organization subscriptions.  At most one is active per organization."""

    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(128), ForeignKey("billing_plans.plan_id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    external_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_items_json: Mapped[dict[str, str] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','trialing','past_due','canceled')",
            name="ck_subscriptions_status",
        ),
        Index(
            "uq_subscriptions_active_org",
            "organization_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Generated invoices with line-item detail and the pricing calculation."""

    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("subscriptions.subscription_id"), nullable=False
    )
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    base_cost: Mapped[float] = mapped_column(_Money, nullable=False)
    usage_cost: Mapped[float] = mapped_column(_Money, nullable=False)
    subtotal: Mapped[float] = mapped_column(_Money, nullable=False)
    total: Mapped[float] = mapped_column(_Money, nullable=False)
    amount_paid: Mapped[float] = mapped_column(_Money, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    line_items_json: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False)
    calculation_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','open','paid','void')",
            name="ck_invoices_status",
        ),
        Index("uq_invoices_number", "invoice_number", unique=True),
        UniqueConstraint("subscription_id", "period_start", name="uq_invoices_subscription_period"),
        Index("ix_invoices_org_created", "organization_id", "created_at"),
    )


class InvoiceSequenceTable(Base):
    """Serializing invoice-number counter, one row per ``YYYYMM``."""

    __tablename__ = "invoice_sequences"

    period_key: Mapped[str] = mapped_column(String(6), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


class UsageExportTable(Base):
    """Asynchronous usage export jobs and their generated content."""

    __tablename__ = "usage_exports"

    export_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    format: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','completed','failed')",
            name="ck_usage_exports_status",
        ),
        CheckConstraint("format IN ('csv','json')", name="ck_usage_exports_format"),
        Index("ix_usage_exports_org_created", "organization_id", "created_at"),
    )
