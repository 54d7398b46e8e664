"""Billing endpoints: cost calculation, invoices, upgrade previews and usage reporting."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query, status
from fastapi.responses import Response
from metering_engine.errors import ValidationError
from metering_engine.models.billing import Invoice, UpgradePreview, UsageCostCalculation

from api.dependencies import (
    BillingProviderDep,
    InvoiceGeneratorDep,
    PlanCatalogDep,
    UpgradePreviewerDep,
    UsageReporterDep,
)
from api.schemas import CostRequest, GenerateInvoiceRequest, InvoiceListResponse, make_period
from api.services.billing_service import UpcomingInvoice, UsageReportResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Single invoice
# ---------------------------------------------------------------------------
# Registered before the ``/{org}/...`` routes so that ``invoices`` is never
# captured as an organization id.


@router.get("/invoices/{invoice_id}", response_model=Invoice)
async def get_invoice(invoice_id: str, invoices: InvoiceGeneratorDep) -> Invoice:
    return await invoices.get_invoice(invoice_id)


@router.get("/invoices/{invoice_id}/breakdown", response_model=dict[str, float])
async def get_cost_breakdown(invoice_id: str, invoices: InvoiceGeneratorDep) -> dict[str, float]:
    """Return ``{label: cost}`` with the base subscription first."""
    return await invoices.get_cost_breakdown(invoice_id)


@router.get("/invoices/{invoice_id}/pdf")
async def download_invoice_pdf(invoice_id: str, invoices: InvoiceGeneratorDep) -> Response:
    invoice = await invoices.get_invoice(invoice_id)
    pdf = await invoices.render_pdf(invoice_id)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{invoice.invoice_number}.pdf"'},
    )


@router.post("/invoices/{invoice_id}/finalize", response_model=Invoice)
async def finalize_invoice(invoice_id: str, invoices: InvoiceGeneratorDep) -> Invoice:
    return await invoices.finalize_invoice(invoice_id)


@router.post("/invoices/{invoice_id}/pay", response_model=Invoice)
async def mark_invoice_paid(invoice_id: str, invoices: InvoiceGeneratorDep) -> Invoice:
    return await invoices.mark_paid(invoice_id)


@router.post("/invoices/{invoice_id}/void", response_model=Invoice)
async def void_invoice(invoice_id: str, invoices: InvoiceGeneratorDep) -> Invoice:
    return await invoices.void_invoice(invoice_id)


# ---------------------------------------------------------------------------
# Organization billing
# ---------------------------------------------------------------------------


@router.post("/{org}/cost", response_model=UsageCostCalculation)
async def calculate_cost(org: str, body: CostRequest, invoices: InvoiceGeneratorDep) -> UsageCostCalculation:
    """Price the organization's usage over a period without invoicing it."""
    return await invoices.calculate_cost(org, body.to_range(), plan_id=body.plan_id)


@router.post("/{org}/invoices", response_model=Invoice, status_code=status.HTTP_201_CREATED)
async def generate_invoice(
    org: str,
    body: GenerateInvoiceRequest,
    invoices: InvoiceGeneratorDep,
    catalog: PlanCatalogDep,
) -> Invoice:
    """Generate a draft invoice.

    Without a body the active subscription's current period is invoiced.
    """
    subscription_id = body.subscription_id
    start, end = body.start, body.end
    if subscription_id is None or start is None or end is None:
        active = await catalog.get_active_subscription(org)
        subscription_id = subscription_id or active.id
        start = start or active.current_period_start
        end = end or active.current_period_end
    return await invoices.generate_invoice(org, subscription_id, make_period(start, end))


@router.get("/{org}/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    org: str,
    invoices: InvoiceGeneratorDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> InvoiceListResponse:
    items, total = await invoices.list_invoices(org, limit=limit, offset=offset)
    return InvoiceListResponse(items=items, total=total, limit=limit, offset=offset)


@router.get("/{org}/upgrade-preview", response_model=UpgradePreview)
async def preview_upgrade(
    org: str,
    previewer: UpgradePreviewerDep,
    target_plan_id: str = Query(..., min_length=1),
) -> UpgradePreview:
    return await previewer.preview_upgrade(org, target_plan_id)


# ---------------------------------------------------------------------------
# Payment provider
# ---------------------------------------------------------------------------


@router.post("/{org}/report-usage", response_model=UsageReportResult)
async def report_usage(org: str, reporter: UsageReporterDep) -> UsageReportResult:
    """Push unreported whole units of this month's usage to the provider."""
    return await reporter.report_pending(org)


@router.get("/{org}/upcoming", response_model=UpcomingInvoice)
async def get_upcoming_invoice(
    org: str,
    provider: BillingProviderDep,
    catalog: PlanCatalogDep,
) -> UpcomingInvoice:
    """Return the provider's preview of the next invoice."""
    subscription = await catalog.get_active_subscription(org)
    if not subscription.external_customer_id:
        raise ValidationError(f"Organization {org} has no payment provider customer")
    return await provider.get_upcoming_invoice(subscription.external_customer_id)
