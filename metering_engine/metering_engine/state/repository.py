"""Repository classes providing access to the metering state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
calling ``session.commit()`` (or relying on the ``get_session`` context
manager).

Concurrency-sensitive writes are single SQL statements:

* aggregate increments are ``INSERT ... ON CONFLICT DO UPDATE SET
  total = total + excluded.total``;
* alerts are ``INSERT ... ON CONFLICT DO NOTHING`` against the partial
  unique index on unresolved alerts;
* invoice numbers come from a per-month counter row bumped the same way
  as aggregates, which holds a row lock until the transaction ends.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from metering_engine.metering.periods import ensure_utc
from metering_engine.models.billing import (
    Invoice,
    InvoiceStatus,
    LineItem,
    Subscription,
    SubscriptionStatus,
    UsageCostCalculation,
)
from metering_engine.models.plan import BillingPlan
from metering_engine.models.usage import (
    AlertSeverity,
    AlertType,
    ExportFormat,
    ExportStatus,
    LimitType,
    ResetPeriod,
    UsageAlert,
    UsageEvent,
    UsageExport,
    UsageLimit,
    UsageMetric,
)
from metering_engine.state.database import dialect_name
from metering_engine.state.tables import (
    BillingPlanTable,
    InvoiceSequenceTable,
    InvoiceTable,
    SubscriptionTable,
    UsageAlertTable,
    UsageEventTable,
    UsageExportTable,
    UsageLimitTable,
    UsageMetricTable,
    UsageSummaryTable,
)

logger = logging.getLogger(__name__)

# Advisory lock keys for invoice numbering are this base plus YYYYMM.
_INVOICE_LOCK_NAMESPACE = 7_340_000_000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _utc_or_none(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    # Core table so that ``rowcount`` reflects rows actually written.
    target = getattr(table, "__table__", table)
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(target)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(target)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
    increment_columns: Sequence[str] = (),
) -> Any:
    """Dialect-aware upsert: ``ON CONFLICT DO UPDATE`` on PostgreSQL or SQLite.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names overwritten with the incoming value on conflict.
    increment_columns:
        Column names incremented by the incoming value on conflict.  The
        addition happens inside the database, so concurrent upserts of
        the same row never lose an update.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt = _dialect_insert(session, table).values(**values)
    set_: dict[str, Any] = {col: getattr(stmt.excluded, col) for col in update_columns}
    for col in increment_columns:
        set_[col] = stmt.table.c[col] + getattr(stmt.excluded, col)
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str] | None = None,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Without *index_elements* any unique violation (including partial
    unique indexes) turns the insert into a no-op.  ``rowcount`` on the
    result is 1 when a row was written and 0 otherwise.
    """
    stmt = _dialect_insert(session, table).values(**values)
    if index_elements is not None:
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    else:
        stmt = stmt.on_conflict_do_nothing()
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Row converters
# ---------------------------------------------------------------------------


def metric_from_row(row: UsageMetricTable) -> UsageMetric:
    return UsageMetric(id=row.metric_id, name=row.name, unit=row.unit, description=row.description)


def limit_from_row(row: UsageLimitTable) -> UsageLimit:
    return UsageLimit(
        id=row.limit_id,
        organization_id=row.organization_id,
        metric_id=row.metric_id,
        limit_type=LimitType(row.limit_type),
        limit_value=row.limit_value,
        reset_period=ResetPeriod(row.reset_period),
        thresholds=list(row.thresholds_json or []),
        is_active=row.is_active,
    )


def alert_from_row(row: UsageAlertTable) -> UsageAlert:
    return UsageAlert(
        id=row.alert_id,
        organization_id=row.organization_id,
        metric_id=row.metric_id,
        alert_type=AlertType(row.alert_type),
        threshold_percentage=row.threshold_percentage,
        current_usage=row.current_usage,
        limit_value=row.limit_value,
        severity=AlertSeverity(row.severity),
        message=row.message,
        resolved=row.resolved,
        created_at=ensure_utc(row.created_at),
        resolved_at=_utc_or_none(row.resolved_at),
    )


def plan_from_row(row: BillingPlanTable) -> BillingPlan:
    data = dict(row.definition_json)
    data["is_active"] = row.is_active
    return BillingPlan.model_validate(data)


def subscription_from_row(row: SubscriptionTable) -> Subscription:
    return Subscription(
        id=row.subscription_id,
        organization_id=row.organization_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        external_customer_id=row.external_customer_id,
        external_subscription_id=row.external_subscription_id,
        external_item_ids=dict(row.external_items_json or {}),
        created_at=ensure_utc(row.created_at),
        canceled_at=_utc_or_none(row.canceled_at),
    )


def invoice_from_row(row: InvoiceTable) -> Invoice:
    return Invoice(
        id=row.invoice_id,
        invoice_number=row.invoice_number,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        period_start=ensure_utc(row.period_start),
        period_end=ensure_utc(row.period_end),
        currency=row.currency,
        base_cost=float(row.base_cost),
        usage_cost=float(row.usage_cost),
        subtotal=float(row.subtotal),
        total=float(row.total),
        amount_paid=float(row.amount_paid),
        amount_due=round(float(row.total) - float(row.amount_paid), 2),
        status=InvoiceStatus(row.status),
        line_items=[LineItem.model_validate(item) for item in row.line_items_json],
        cost_calculation=UsageCostCalculation.model_validate(row.calculation_json),
        due_date=ensure_utc(row.due_date),
        created_at=ensure_utc(row.created_at),
        finalized_at=_utc_or_none(row.finalized_at),
        paid_at=_utc_or_none(row.paid_at),
        voided_at=_utc_or_none(row.voided_at),
    )


def export_from_row(row: UsageExportTable) -> UsageExport:
    return UsageExport(
        id=row.export_id,
        organization_id=row.organization_id,
        period_start=ensure_utc(row.period_start),
        period_end=ensure_utc(row.period_end),
        format=ExportFormat(row.format),
        status=ExportStatus(row.status),
        row_count=row.row_count,
        error=row.error,
        created_at=ensure_utc(row.created_at),
        completed_at=_utc_or_none(row.completed_at),
    )


# ---------------------------------------------------------------------------
# UsageMetricRepository
# ---------------------------------------------------------------------------


class UsageMetricRepository:
    """Read/insert access to the metric catalog."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, metric_id: str) -> UsageMetricTable | None:
        return await self._session.get(UsageMetricTable, metric_id)

    async def create_if_absent(self, metric: UsageMetric) -> bool:
        """Insert *metric*; returns False when the id already exists."""
        result = await _dialect_upsert_nothing(
            self._session,
            UsageMetricTable,
            {
                "metric_id": metric.id,
                "name": metric.name,
                "unit": metric.unit,
                "description": metric.description,
                "created_at": _utcnow(),
            },
            index_elements=["metric_id"],
        )
        await self._session.flush()
        return bool(result.rowcount)

    async def list_all(self) -> list[UsageMetricTable]:
        result = await self._session.execute(select(UsageMetricTable).order_by(UsageMetricTable.metric_id))
        return list(result.scalars().all())

    async def lookup(self, metric_ids: Iterable[str]) -> dict[str, UsageMetricTable]:
        """Return catalog rows for *metric_ids*, keyed by id (missing ids omitted)."""
        ids = list(set(metric_ids))
        if not ids:
            return {}
        result = await self._session.execute(select(UsageMetricTable).where(UsageMetricTable.metric_id.in_(ids)))
        return {row.metric_id: row for row in result.scalars().all()}


# ---------------------------------------------------------------------------
# UsageEventRepository
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Append-only access to the usage event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, events: Sequence[UsageEvent]) -> None:
        for event in events:
            self._session.add(
                UsageEventTable(
                    event_id=event.event_id,
                    organization_id=event.organization_id,
                    metric_id=event.metric_id,
                    quantity=event.quantity,
                    occurred_at=event.timestamp,
                    idempotency_key=event.idempotency_key,
                    metadata_json=event.metadata or None,
                )
            )
        await self._session.flush()

    async def existing_idempotency_keys(self, organization_id: str, keys: Iterable[str]) -> set[str]:
        wanted = [key for key in set(keys) if key]
        if not wanted:
            return set()
        result = await self._session.execute(
            select(UsageEventTable.idempotency_key).where(
                UsageEventTable.organization_id == organization_id,
                UsageEventTable.idempotency_key.in_(wanted),
            )
        )
        return {key for key in result.scalars().all() if key is not None}

    async def sum_by_metric(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        metric_id: str | None = None,
    ) -> dict[str, float]:
        """Sum event quantities in ``[start, end)`` grouped by metric."""
        stmt = (
            select(UsageEventTable.metric_id, func.sum(UsageEventTable.quantity))
            .where(
                UsageEventTable.organization_id == organization_id,
                UsageEventTable.occurred_at >= start,
                UsageEventTable.occurred_at < end,
            )
            .group_by(UsageEventTable.metric_id)
        )
        if metric_id is not None:
            stmt = stmt.where(UsageEventTable.metric_id == metric_id)
        result = await self._session.execute(stmt)
        return {row[0]: float(row[1] or 0.0) for row in result.all()}

    async def daily_totals(
        self,
        organization_id: str,
        metric_id: str,
        start: datetime,
        end: datetime,
    ) -> dict[str, float]:
        """Return ``{"YYYY-MM-DD": total}`` for days with usage in ``[start, end)``."""
        day = func.date(UsageEventTable.occurred_at)
        stmt = (
            select(day, func.sum(UsageEventTable.quantity))
            .where(
                UsageEventTable.organization_id == organization_id,
                UsageEventTable.metric_id == metric_id,
                UsageEventTable.occurred_at >= start,
                UsageEventTable.occurred_at < end,
            )
            .group_by(day)
        )
        result = await self._session.execute(stmt)
        # PostgreSQL returns ``date`` objects, SQLite returns ISO strings.
        return {str(row[0])[:10]: float(row[1] or 0.0) for row in result.all()}

    async def list_range(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
    ) -> list[UsageEventTable]:
        stmt = (
            select(UsageEventTable)
            .where(
                UsageEventTable.organization_id == organization_id,
                UsageEventTable.occurred_at >= start,
                UsageEventTable.occurred_at < end,
            )
            .order_by(UsageEventTable.occurred_at, UsageEventTable.event_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# UsageSummaryRepository
# ---------------------------------------------------------------------------


class UsageSummaryRepository:
    """Running per-month aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def increment(
        self,
        organization_id: str,
        metric_id: str,
        period_start: datetime,
        period_end: datetime,
        quantity: float,
    ) -> None:
        """Atomically add *quantity* to the aggregate, creating it if needed."""
        await _dialect_upsert(
            self._session,
            UsageSummaryTable,
            {
                "organization_id": organization_id,
                "metric_id": metric_id,
                "period_start": period_start,
                "period_end": period_end,
                "total_usage": quantity,
                "reported_usage": 0.0,
                "updated_at": _utcnow(),
            },
            index_elements=["organization_id", "metric_id", "period_start"],
            update_columns=["updated_at"],
            increment_columns=["total_usage"],
        )
        await self._session.flush()

    async def get_total(self, organization_id: str, metric_id: str, period_start: datetime) -> float:
        result = await self._session.execute(
            select(UsageSummaryTable.total_usage).where(
                UsageSummaryTable.organization_id == organization_id,
                UsageSummaryTable.metric_id == metric_id,
                UsageSummaryTable.period_start == period_start,
            )
        )
        value = result.scalar_one_or_none()
        return float(value) if value is not None else 0.0

    async def list_for_period(self, organization_id: str, period_start: datetime) -> list[UsageSummaryTable]:
        stmt = (
            select(UsageSummaryTable)
            .where(
                UsageSummaryTable.organization_id == organization_id,
                UsageSummaryTable.period_start == period_start,
            )
            .order_by(UsageSummaryTable.metric_id)
            # Rows may have been bumped by core upserts in this session.
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_reported(
        self,
        organization_id: str,
        metric_id: str,
        period_start: datetime,
        quantity: float,
    ) -> None:
        """Atomically advance ``reported_usage`` by *quantity*."""
        await self._session.execute(
            update(UsageSummaryTable)
            .where(
                UsageSummaryTable.organization_id == organization_id,
                UsageSummaryTable.metric_id == metric_id,
                UsageSummaryTable.period_start == period_start,
            )
            .values(reported_usage=UsageSummaryTable.reported_usage + quantity)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# UsageLimitRepository
# ---------------------------------------------------------------------------


class UsageLimitRepository:
    """CRUD for per-organization usage limits."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, limit: UsageLimit) -> UsageLimitTable:
        """Create or replace the limit for (organization, metric, reset period)."""
        now = _utcnow()
        await _dialect_upsert(
            self._session,
            UsageLimitTable,
            {
                "limit_id": limit.id,
                "organization_id": limit.organization_id,
                "metric_id": limit.metric_id,
                "limit_type": limit.limit_type.value,
                "limit_value": limit.limit_value,
                "reset_period": limit.reset_period.value,
                "thresholds_json": list(limit.thresholds),
                "is_active": limit.is_active,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["organization_id", "metric_id", "reset_period"],
            update_columns=["limit_type", "limit_value", "thresholds_json", "is_active", "updated_at"],
        )
        await self._session.flush()
        result = await self._session.execute(
            select(UsageLimitTable)
            .where(
                UsageLimitTable.organization_id == limit.organization_id,
                UsageLimitTable.metric_id == limit.metric_id,
                UsageLimitTable.reset_period == limit.reset_period.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get(self, limit_id: str) -> UsageLimitTable | None:
        return await self._session.get(UsageLimitTable, limit_id)

    async def list_active(self, organization_id: str, metric_id: str | None = None) -> list[UsageLimitTable]:
        stmt = select(UsageLimitTable).where(
            UsageLimitTable.organization_id == organization_id,
            UsageLimitTable.is_active.is_(True),
        )
        if metric_id is not None:
            stmt = stmt.where(UsageLimitTable.metric_id == metric_id)
        result = await self._session.execute(
            stmt.order_by(UsageLimitTable.metric_id, UsageLimitTable.reset_period).execution_options(
                populate_existing=True
            )
        )
        return list(result.scalars().all())

    async def deactivate(self, organization_id: str, limit_id: str) -> bool:
        result = await self._session.execute(
            update(UsageLimitTable)
            .where(
                UsageLimitTable.organization_id == organization_id,
                UsageLimitTable.limit_id == limit_id,
                UsageLimitTable.is_active.is_(True),
            )
            .values(is_active=False, updated_at=_utcnow())
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# UsageAlertRepository
# ---------------------------------------------------------------------------


class UsageAlertRepository:
    """Alert persistence with de-duplication of unresolved alerts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_unresolved(
        self,
        organization_id: str,
        metric_id: str,
        alert_type: AlertType,
    ) -> UsageAlertTable | None:
        result = await self._session.execute(
            select(UsageAlertTable).where(
                UsageAlertTable.organization_id == organization_id,
                UsageAlertTable.metric_id == metric_id,
                UsageAlertTable.alert_type == alert_type.value,
                UsageAlertTable.resolved.is_(False),
            )
        )
        return result.scalar_one_or_none()

    async def insert_if_absent(self, alert: UsageAlert) -> bool:
        """Insert *alert* unless an unresolved alert of the same kind exists.

        Returns True when the row was written.  The partial unique index
        makes this safe against concurrent inserts.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            UsageAlertTable,
            {
                "alert_id": alert.id,
                "organization_id": alert.organization_id,
                "metric_id": alert.metric_id,
                "alert_type": alert.alert_type.value,
                "threshold_percentage": alert.threshold_percentage,
                "current_usage": alert.current_usage,
                "limit_value": alert.limit_value,
                "severity": alert.severity.value,
                "message": alert.message,
                "resolved": False,
                "created_at": alert.created_at,
            },
        )
        await self._session.flush()
        return bool(result.rowcount)

    async def get(self, alert_id: str) -> UsageAlertTable | None:
        result = await self._session.execute(
            select(UsageAlertTable)
            .where(UsageAlertTable.alert_id == alert_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_organization(
        self,
        organization_id: str,
        include_resolved: bool = False,
    ) -> list[UsageAlertTable]:
        stmt = select(UsageAlertTable).where(UsageAlertTable.organization_id == organization_id)
        if not include_resolved:
            stmt = stmt.where(UsageAlertTable.resolved.is_(False))
        result = await self._session.execute(stmt.order_by(UsageAlertTable.created_at.desc()))
        return list(result.scalars().all())

    async def resolve(self, alert_id: str, resolved_at: datetime) -> bool:
        """Mark an unresolved alert resolved.  Returns False if it already was."""
        result = await self._session.execute(
            update(UsageAlertTable)
            .where(
                UsageAlertTable.alert_id == alert_id,
                UsageAlertTable.resolved.is_(False),
            )
            .values(resolved=True, resolved_at=resolved_at)
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PlanRepository
# ---------------------------------------------------------------------------


class PlanRepository:
    """Access to the shared plan catalog."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: str) -> BillingPlanTable | None:
        return await self._session.get(BillingPlanTable, plan_id)

    async def create(self, plan: BillingPlan) -> BillingPlanTable:
        row = BillingPlanTable(
            plan_id=plan.id,
            name=plan.name,
            base_price=plan.base_price,
            currency=plan.currency,
            billing_interval=plan.billing_interval.value,
            definition_json=plan.model_dump(mode="json", by_alias=True),
            is_active=plan.is_active,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_plans(self, active_only: bool = True) -> list[BillingPlanTable]:
        stmt = select(BillingPlanTable)
        if active_only:
            stmt = stmt.where(BillingPlanTable.is_active.is_(True))
        result = await self._session.execute(stmt.order_by(BillingPlanTable.base_price, BillingPlanTable.plan_id))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Organization subscriptions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, subscription_id: str) -> SubscriptionTable | None:
        return await self._session.get(SubscriptionTable, subscription_id)

    async def get_active(self, organization_id: str) -> SubscriptionTable | None:
        result = await self._session.execute(
            select(SubscriptionTable).where(
                SubscriptionTable.organization_id == organization_id,
                SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        subscription_id: str,
        organization_id: str,
        plan_id: str,
        period_start: datetime,
        period_end: datetime,
        external_customer_id: str | None = None,
        external_subscription_id: str | None = None,
        external_item_ids: dict[str, str] | None = None,
    ) -> SubscriptionTable:
        row = SubscriptionTable(
            subscription_id=subscription_id,
            organization_id=organization_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=period_start,
            current_period_end=period_end,
            external_customer_id=external_customer_id,
            external_subscription_id=external_subscription_id,
            external_items_json=external_item_ids or None,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def cancel(self, subscription_id: str, canceled_at: datetime) -> bool:
        result = await self._session.execute(
            update(SubscriptionTable)
            .where(
                SubscriptionTable.subscription_id == subscription_id,
                SubscriptionTable.status != SubscriptionStatus.CANCELED.value,
            )
            .values(status=SubscriptionStatus.CANCELED.value, canceled_at=canceled_at)
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """Invoices and the invoice-number sequence."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, invoice: Invoice) -> InvoiceTable:
        row = InvoiceTable(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            organization_id=invoice.organization_id,
            subscription_id=invoice.subscription_id,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            currency=invoice.currency,
            base_cost=invoice.base_cost,
            usage_cost=invoice.usage_cost,
            subtotal=invoice.subtotal,
            total=invoice.total,
            amount_paid=invoice.amount_paid,
            status=invoice.status.value,
            line_items_json=[item.model_dump(mode="json") for item in invoice.line_items],
            calculation_json=invoice.cost_calculation.model_dump(mode="json"),
            due_date=invoice.due_date,
            created_at=invoice.created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        result = await self._session.execute(
            select(InvoiceTable)
            .where(InvoiceTable.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def exists_for_period(self, subscription_id: str, period_start: datetime) -> bool:
        result = await self._session.execute(
            select(func.count())
            .select_from(InvoiceTable)
            .where(
                InvoiceTable.subscription_id == subscription_id,
                InvoiceTable.period_start == period_start,
            )
        )
        return result.scalar_one() > 0

    async def list_for_organization(
        self,
        organization_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[InvoiceTable], int]:
        """List invoices for an organization, newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        count_r = await self._session.execute(
            select(func.count()).select_from(InvoiceTable).where(InvoiceTable.organization_id == organization_id)
        )
        total = count_r.scalar_one()

        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.organization_id == organization_id)
            .order_by(InvoiceTable.created_at.desc(), InvoiceTable.invoice_number.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def transition(
        self,
        invoice_id: str,
        expected: InvoiceStatus,
        target: InvoiceStatus,
        **values: Any,
    ) -> bool:
        """Compare-and-set the invoice status.  Returns False if *expected* no longer holds."""
        result = await self._session.execute(
            update(InvoiceTable)
            .where(
                InvoiceTable.invoice_id == invoice_id,
                InvoiceTable.status == expected.value,
            )
            .values(status=target.value, **values)
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def get_next_invoice_number(self, at: datetime, prefix: str = "INV") -> str:
        """Issue the next invoice number for the calendar month of *at*.

        Format: ``{prefix}-YYYYMM-XXXX`` where XXXX is the zero-padded,
        1-based sequence for that month across all organizations.  The
        counter row stays locked until the caller's transaction ends, and on
        PostgreSQL a transaction-scoped advisory lock is taken first, so
        concurrent generators are serialised per month.
        """
        period_key = ensure_utc(at).strftime("%Y%m")
        if "postgresql" in dialect_name(self._session):
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:lock_key)"),
                {"lock_key": _INVOICE_LOCK_NAMESPACE + int(period_key)},
            )
        await _dialect_upsert(
            self._session,
            InvoiceSequenceTable,
            {"period_key": period_key, "last_value": 1},
            index_elements=["period_key"],
            update_columns=[],
            increment_columns=["last_value"],
        )
        result = await self._session.execute(
            select(InvoiceSequenceTable.last_value).where(InvoiceSequenceTable.period_key == period_key)
        )
        sequence = result.scalar_one()
        return f"{prefix}-{period_key}-{sequence:04d}"


# ---------------------------------------------------------------------------
# UsageExportRepository
# ---------------------------------------------------------------------------


class UsageExportRepository:
    """Export job records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        export_id: str,
        organization_id: str,
        period_start: datetime,
        period_end: datetime,
        export_format: ExportFormat,
    ) -> UsageExportTable:
        row = UsageExportTable(
            export_id=export_id,
            organization_id=organization_id,
            period_start=period_start,
            period_end=period_end,
            format=export_format.value,
            status=ExportStatus.PENDING.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, export_id: str) -> UsageExportTable | None:
        result = await self._session.execute(
            select(UsageExportTable)
            .where(UsageExportTable.export_id == export_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_status(self, export_id: str, status: ExportStatus, **values: Any) -> bool:
        result = await self._session.execute(
            update(UsageExportTable)
            .where(UsageExportTable.export_id == export_id)
            .values(status=status.value, **values)
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]
