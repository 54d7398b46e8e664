"""Invoice generation, lifecycle and PDF rendering.

Builds an invoice for a subscription's billing period from the event log
and the subscribed plan, numbers it from the per-month counter, and
persists it as a draft.  Status only moves forward (draft -> open ->
paid/void); each change is a compare-and-set on the stored status so
two concurrent transitions cannot both succeed.
"""

from __future__ import annotations

import io
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from metering_engine.config import Settings, load_settings
from metering_engine.errors import (
    InvalidInvoiceTransitionError,
    InvoiceNotFoundError,
    NoActiveSubscriptionError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    ValidationError,
)
from metering_engine.metering.periods import ensure_utc
from metering_engine.models.billing import (
    DateRange,
    Invoice,
    InvoiceStatus,
    LineItem,
    LineItemType,
    SubscriptionStatus,
    UsageCostCalculation,
)
from metering_engine.models.usage import UsageSummary
from metering_engine.pricing.engine import calculate_usage_cost, cost_breakdown
from metering_engine.state.repository import (
    InvoiceRepository,
    PlanRepository,
    SubscriptionRepository,
    UsageEventRepository,
    UsageMetricRepository,
    invoice_from_row,
    plan_from_row,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _money(value: float) -> float:
    return round(value, 2)


class InvoiceGenerator:
    """Generate and manage invoices.

    Parameters
    ----------
    session:
        Request-scoped database session.
    settings:
        Engine settings (due days, number prefix).
    event_bus:
        Receives ``invoice.generated`` and ``invoice.status_changed``.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._settings = settings or load_settings()
        self._bus = event_bus
        self._clock = clock
        self._invoices = InvoiceRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._plans = PlanRepository(session)
        self._events = UsageEventRepository(session)
        self._metrics = UsageMetricRepository(session)

    async def _emit(self, event_type: EventType, organization_id: str, data: dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.emit(event_type, organization_id=organization_id, data=data)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _usage_summaries(self, organization_id: str, period: DateRange) -> list[UsageSummary]:
        usage = await self._events.sum_by_metric(organization_id, period.start, period.end)
        catalog = await self._metrics.lookup(usage)
        return [
            UsageSummary(
                organization_id=organization_id,
                metric_id=metric_id,
                metric_name=catalog[metric_id].name if metric_id in catalog else metric_id,
                period_start=period.start,
                period_end=period.end,
                total_usage=quantity,
                unit=catalog[metric_id].unit if metric_id in catalog else "units",
            )
            for metric_id, quantity in sorted(usage.items())
        ]

    async def calculate_cost(
        self,
        organization_id: str,
        period: DateRange,
        plan_id: str | None = None,
    ) -> UsageCostCalculation:
        """Price the organization's usage in *period* without invoicing it.

        Uses *plan_id* when given, otherwise the plan of the active
        subscription.
        """
        if plan_id is None:
            subscription = await self._subscriptions.get_active(organization_id)
            if subscription is None:
                raise NoActiveSubscriptionError(organization_id)
            plan_id = subscription.plan_id

        plan_row = await self._plans.get(plan_id)
        if plan_row is None:
            raise PlanNotFoundError(plan_id)
        summaries = await self._usage_summaries(organization_id, period)
        return calculate_usage_cost(summaries, plan_from_row(plan_row), period)

    async def generate_invoice(
        self,
        organization_id: str,
        subscription_id: str,
        period: DateRange,
    ) -> Invoice:
        """Generate the draft invoice for one billing period.

        Raises
        ------
        SubscriptionNotFoundError
            The subscription does not exist, is not active, or belongs to
            another organization.
        PlanNotFoundError
            The subscribed plan is missing from the catalog.
        ValidationError
            An invoice already exists for this subscription and period.
        """
        subscription = await self._subscriptions.get(subscription_id)
        if (
            subscription is None
            or subscription.organization_id != organization_id
            or subscription.status != SubscriptionStatus.ACTIVE.value
        ):
            raise SubscriptionNotFoundError(subscription_id)

        plan_row = await self._plans.get(subscription.plan_id)
        if plan_row is None:
            raise PlanNotFoundError(subscription.plan_id)
        plan = plan_from_row(plan_row)

        if await self._invoices.exists_for_period(subscription_id, period.start):
            raise ValidationError(
                f"An invoice already exists for subscription {subscription_id} "
                f"and the period starting {period.start.date().isoformat()}"
            )

        summaries = await self._usage_summaries(organization_id, period)
        calculation = calculate_usage_cost(summaries, plan, period)

        line_items = [
            LineItem(
                description=f"{plan.name} - Base Subscription",
                item_type=LineItemType.SUBSCRIPTION,
                quantity=1,
                unit_price=plan.base_price,
                amount=_money(plan.base_price),
            )
        ]
        for detail in calculation.usage_details:
            if detail.billable_usage <= 0:
                continue
            line_items.append(
                LineItem(
                    description=f"{detail.metric_name} - Usage",
                    item_type=LineItemType.USAGE,
                    metric_id=detail.metric_id,
                    quantity=detail.billable_usage,
                    unit_price=detail.unit_price,
                    amount=_money(detail.total_cost),
                )
            )

        usage_cost = _money(sum(item.amount for item in line_items if item.item_type is LineItemType.USAGE))
        subtotal = _money(sum(item.amount for item in line_items))
        now = ensure_utc(self._clock())
        invoice_number = await self._invoices.get_next_invoice_number(
            now, prefix=self._settings.invoice_number_prefix
        )

        invoice = Invoice(
            id=uuid.uuid4().hex,
            invoice_number=invoice_number,
            organization_id=organization_id,
            subscription_id=subscription_id,
            period_start=period.start,
            period_end=period.end,
            currency=plan.currency,
            base_cost=_money(plan.base_price),
            usage_cost=usage_cost,
            subtotal=subtotal,
            total=subtotal,
            amount_due=subtotal,
            status=InvoiceStatus.DRAFT,
            line_items=line_items,
            cost_calculation=calculation,
            due_date=now + timedelta(days=self._settings.invoice_due_days),
            created_at=now,
        )
        try:
            await self._invoices.create(invoice)
        except IntegrityError as exc:
            raise ValidationError(
                f"An invoice already exists for subscription {subscription_id} and this period"
            ) from exc

        logger.info(
            "Generated invoice %s for org=%s period=%s..%s total=%s %.2f",
            invoice_number,
            organization_id,
            period.start.strftime("%Y-%m-%d"),
            period.end.strftime("%Y-%m-%d"),
            invoice.currency,
            invoice.total,
        )
        await self._emit(
            EventType.INVOICE_GENERATED,
            organization_id,
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice_number,
                "total": invoice.total,
                "currency": invoice.currency,
            },
        )
        return invoice

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _transition(self, invoice_id: str, target: InvoiceStatus, **values: Any) -> Invoice:
        invoice = await self.get_invoice(invoice_id)
        if not invoice.status.can_transition_to(target):
            raise InvalidInvoiceTransitionError(invoice_id, invoice.status.value, target.value)

        if not await self._invoices.transition(invoice_id, invoice.status, target, **values):
            # Lost a race with another transition.
            current = await self.get_invoice(invoice_id)
            raise InvalidInvoiceTransitionError(invoice_id, current.status.value, target.value)

        logger.info("Invoice %s: %s -> %s", invoice.invoice_number, invoice.status.value, target.value)
        await self._emit(
            EventType.INVOICE_STATUS_CHANGED,
            invoice.organization_id,
            {
                "invoice_id": invoice_id,
                "invoice_number": invoice.invoice_number,
                "from": invoice.status.value,
                "to": target.value,
            },
        )
        return await self.get_invoice(invoice_id)

    async def finalize_invoice(self, invoice_id: str) -> Invoice:
        return await self._transition(invoice_id, InvoiceStatus.OPEN, finalized_at=ensure_utc(self._clock()))

    async def mark_paid(self, invoice_id: str) -> Invoice:
        invoice = await self.get_invoice(invoice_id)
        return await self._transition(
            invoice_id,
            InvoiceStatus.PAID,
            paid_at=ensure_utc(self._clock()),
            amount_paid=invoice.total,
        )

    async def void_invoice(self, invoice_id: str) -> Invoice:
        return await self._transition(invoice_id, InvoiceStatus.VOID, voided_at=ensure_utc(self._clock()))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_invoice(self, invoice_id: str) -> Invoice:
        row = await self._invoices.get(invoice_id)
        if row is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice_from_row(row)

    async def list_invoices(
        self,
        organization_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        """Return ``(invoices, total_count)`` newest first."""
        rows, total = await self._invoices.list_for_organization(organization_id, limit=limit, offset=offset)
        return [invoice_from_row(row) for row in rows], total

    async def get_cost_breakdown(self, invoice_id: str) -> dict[str, float]:
        invoice = await self.get_invoice(invoice_id)
        return cost_breakdown(invoice.cost_calculation)

    async def render_pdf(self, invoice_id: str) -> bytes:
        invoice = await self.get_invoice(invoice_id)
        return render_invoice_pdf(invoice)


# ---------------------------------------------------------------------------
# PDF rendering
# ---------------------------------------------------------------------------


def render_invoice_pdf(invoice: Invoice) -> bytes:
    """Render *invoice* as a single-page PDF document using reportlab."""
    from reportlab.lib import colors
    from reportlab.lib.pagesizes import letter
    from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
    from reportlab.lib.units import inch
    from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=invoice.invoice_number,
    )
    styles = getSampleStyleSheet()
    meta_style = ParagraphStyle("Meta", parent=styles["Normal"], fontSize=10, textColor=colors.grey)
    currency = invoice.currency

    elements: list[Any] = [
        Paragraph(f"Invoice {invoice.invoice_number}", styles["Heading1"]),
        Paragraph(f"Organization: {invoice.organization_id}", meta_style),
        Paragraph(
            f"Billing period: {invoice.period_start:%Y-%m-%d} to {invoice.period_end:%Y-%m-%d}",
            meta_style,
        ),
        Paragraph(f"Issued: {invoice.created_at:%Y-%m-%d}", meta_style),
        Paragraph(f"Due: {invoice.due_date:%Y-%m-%d}", meta_style),
        Paragraph(f"Status: {invoice.status.value.upper()}", meta_style),
        Spacer(1, 24),
    ]

    table_data: list[list[str]] = [["Description", "Quantity", "Unit Price", "Amount"]]
    for item in invoice.line_items:
        table_data.append(
            [
                item.description,
                f"{item.quantity:g}",
                f"{item.unit_price:,.4f}".rstrip("0").rstrip("."),
                f"{item.amount:,.2f}",
            ]
        )
    table_data.append(["", "", "Subtotal:", f"{invoice.subtotal:,.2f}"])
    table_data.append(["", "", "Paid:", f"{invoice.amount_paid:,.2f}"])
    table_data.append(["", "", f"Amount due ({currency}):", f"{invoice.amount_due:,.2f}"])

    table = Table(table_data, colWidths=[3.25 * inch, 1 * inch, 1.5 * inch, 1.25 * inch])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1f2937")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("BOTTOMPADDING", (0, 0), (-1, 0), 10),
                ("GRID", (0, 0), (-1, -4), 0.5, colors.grey),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("FONTNAME", (2, -3), (-1, -1), "Helvetica-Bold"),
                ("LINEABOVE", (2, -1), (-1, -1), 1.5, colors.black),
            ]
        )
    )
    elements.append(table)

    doc.build(elements)
    return buf.getvalue()
