"""Initial metering and billing schema.

Creates the usage event log, monthly aggregates, limits, alerts (with a
partial unique index on unresolved alerts), the plan catalog,
subscriptions, invoices with their per-month number sequence, and usage
exports.

Revision ID: 001
Revises:
Create Date: 2026-07-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_Json = JSONB().with_variant(sa.JSON(), "sqlite")
_Money = sa.Numeric(14, 4)


def _timestamps(*names: str, nullable: bool = False) -> list[sa.Column]:
    return [sa.Column(name, sa.DateTime(timezone=True), nullable=nullable) for name in names]


def upgrade() -> None:
    op.create_table(
        "usage_metrics",
        sa.Column("metric_id", sa.String(128), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("unit", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps("created_at"),
    )

    op.create_table(
        "usage_events",
        sa.Column("event_id", sa.String(64), primary_key=True),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("metric_id", sa.String(128), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("idempotency_key", sa.String(256), nullable=True),
        sa.Column("metadata_json", _Json, nullable=True),
        *_timestamps("created_at"),
        sa.CheckConstraint("quantity >= 0", name="ck_usage_events_quantity"),
    )
    op.create_index(
        "ix_usage_events_org_metric_time",
        "usage_events",
        ["organization_id", "metric_id", "occurred_at"],
    )
    op.create_index("ix_usage_events_org_time", "usage_events", ["organization_id", "occurred_at"])
    op.create_index(
        "uq_usage_events_idempotency",
        "usage_events",
        ["organization_id", "idempotency_key"],
        unique=True,
    )

    op.create_table(
        "usage_summaries",
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("metric_id", sa.String(128), nullable=False),
        *_timestamps("period_start", "period_end"),
        sa.Column("total_usage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("reported_usage", sa.Float(), nullable=False, server_default="0"),
        *_timestamps("updated_at"),
        sa.PrimaryKeyConstraint("organization_id", "metric_id", "period_start"),
    )
    op.create_index("ix_usage_summaries_org_period", "usage_summaries", ["organization_id", "period_start"])

    op.create_table(
        "usage_limits",
        sa.Column("limit_id", sa.String(64), primary_key=True),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("metric_id", sa.String(128), nullable=False),
        sa.Column("limit_type", sa.String(32), nullable=False),
        sa.Column("limit_value", sa.Float(), nullable=False),
        sa.Column("reset_period", sa.String(16), nullable=False),
        sa.Column("thresholds_json", _Json, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps("created_at", "updated_at"),
        sa.CheckConstraint("limit_type IN ('hard','soft','billing_only')", name="ck_usage_limits_type"),
        sa.CheckConstraint(
            "reset_period IN ('daily','weekly','monthly','yearly')",
            name="ck_usage_limits_reset",
        ),
        sa.UniqueConstraint("organization_id", "metric_id", "reset_period", name="uq_usage_limits_scope"),
    )

    op.create_table(
        "usage_alerts",
        sa.Column("alert_id", sa.String(64), primary_key=True),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("metric_id", sa.String(128), nullable=False),
        sa.Column("alert_type", sa.String(32), nullable=False),
        sa.Column("threshold_percentage", sa.Float(), nullable=False),
        sa.Column("current_usage", sa.Float(), nullable=False),
        sa.Column("limit_value", sa.Float(), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps("created_at"),
        *_timestamps("resolved_at", nullable=True),
        sa.CheckConstraint(
            "alert_type IN ('threshold_exceeded','limit_exceeded','anomaly_detected')",
            name="ck_usage_alerts_type",
        ),
        sa.CheckConstraint("severity IN ('info','warning','critical')", name="ck_usage_alerts_severity"),
    )
    op.create_index(
        "uq_usage_alerts_unresolved",
        "usage_alerts",
        ["organization_id", "metric_id", "alert_type"],
        unique=True,
        postgresql_where=sa.text("NOT resolved"),
        sqlite_where=sa.text("resolved = 0"),
    )
    op.create_index("ix_usage_alerts_org_created", "usage_alerts", ["organization_id", "created_at"])

    op.create_table(
        "billing_plans",
        sa.Column("plan_id", sa.String(128), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("base_price", _Money, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("billing_interval", sa.String(16), nullable=False),
        sa.Column("definition_json", _Json, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps("created_at"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.String(64), primary_key=True),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("plan_id", sa.String(128), sa.ForeignKey("billing_plans.plan_id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        *_timestamps("current_period_start", "current_period_end"),
        sa.Column("external_customer_id", sa.String(256), nullable=True),
        sa.Column("external_subscription_id", sa.String(256), nullable=True),
        sa.Column("external_items_json", _Json, nullable=True),
        *_timestamps("created_at"),
        *_timestamps("canceled_at", nullable=True),
        sa.CheckConstraint(
            "status IN ('active','trialing','past_due','canceled')",
            name="ck_subscriptions_status",
        ),
    )
    op.create_index(
        "uq_subscriptions_active_org",
        "subscriptions",
        ["organization_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(64), primary_key=True),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column(
            "subscription_id",
            sa.String(64),
            sa.ForeignKey("subscriptions.subscription_id"),
            nullable=False,
        ),
        *_timestamps("period_start", "period_end"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("base_cost", _Money, nullable=False),
        sa.Column("usage_cost", _Money, nullable=False),
        sa.Column("subtotal", _Money, nullable=False),
        sa.Column("total", _Money, nullable=False),
        sa.Column("amount_paid", _Money, nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("line_items_json", _Json, nullable=False),
        sa.Column("calculation_json", _Json, nullable=False),
        *_timestamps("due_date", "created_at"),
        *_timestamps("finalized_at", "paid_at", "voided_at", nullable=True),
        sa.CheckConstraint("status IN ('draft','open','paid','void')", name="ck_invoices_status"),
        sa.UniqueConstraint("subscription_id", "period_start", name="uq_invoices_subscription_period"),
    )
    op.create_index("uq_invoices_number", "invoices", ["invoice_number"], unique=True)
    op.create_index("ix_invoices_org_created", "invoices", ["organization_id", "created_at"])

    op.create_table(
        "invoice_sequences",
        sa.Column("period_key", sa.String(6), primary_key=True),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "usage_exports",
        sa.Column("export_id", sa.String(64), primary_key=True),
        sa.Column("organization_id", sa.String(128), nullable=False),
        *_timestamps("period_start", "period_end"),
        sa.Column("format", sa.String(8), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps("created_at"),
        *_timestamps("started_at", "completed_at", nullable=True),
        sa.CheckConstraint(
            "status IN ('pending','processing','completed','failed')",
            name="ck_usage_exports_status",
        ),
        sa.CheckConstraint("format IN ('csv','json')", name="ck_usage_exports_format"),
    )
    op.create_index("ix_usage_exports_org_created", "usage_exports", ["organization_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_usage_exports_org_created")
    op.drop_table("usage_exports")
    op.drop_table("invoice_sequences")
    op.drop_index("ix_invoices_org_created")
    op.drop_index("uq_invoices_number")
    op.drop_table("invoices")
    op.drop_index("uq_subscriptions_active_org")
    op.drop_table("subscriptions")
    op.drop_table("billing_plans")
    op.drop_index("ix_usage_alerts_org_created")
    op.drop_index("uq_usage_alerts_unresolved")
    op.drop_table("usage_alerts")
    op.drop_table("usage_limits")
    op.drop_index("ix_usage_summaries_org_period")
    op.drop_table("usage_summaries")
    op.drop_index("uq_usage_events_idempotency")
    op.drop_index("ix_usage_events_org_time")
    op.drop_index("ix_usage_events_org_metric_time")
    op.drop_table("usage_events")
    op.drop_table("usage_metrics")
