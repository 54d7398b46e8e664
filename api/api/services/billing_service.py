"""Stripe payment provider adapter and metered usage reporting.

The engine computes charges itself; Stripe only receives metered
quantities and serves its own invoice previews and artifacts.  Nothing
here charges or settles a payment.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from metering_engine.errors import NoActiveSubscriptionError, PaymentProviderError
from metering_engine.metering.periods import ensure_utc, month_bounds
from metering_engine.state.repository import SubscriptionRepository, UsageSummaryRepository
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings

logger = logging.getLogger(__name__)

_USAGE_ACTIONS = frozenset({"increment", "set"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _major_units(amount: int | None) -> float:
    return round((amount or 0) / 100, 2)


# ---------------------------------------------------------------------------
# Provider models
# ---------------------------------------------------------------------------


class ProviderLineItem(BaseModel):
    description: str
    quantity: float
    amount: float


class UpcomingInvoice(BaseModel):
    """Provider-side invoice preview in major currency units."""

    customer_id: str
    currency: str
    subtotal: float
    total: float
    amount_due: float
    period_start: datetime | None = None
    period_end: datetime | None = None
    line_items: list[ProviderLineItem] = Field(default_factory=list)


class UsageReportItem(BaseModel):
    metric_id: str
    subscription_item_id: str
    quantity: int


class UsageReportFailure(BaseModel):
    metric_id: str
    error: str


class UsageReportResult(BaseModel):
    organization_id: str
    period_start: datetime
    reported: list[UsageReportItem] = Field(default_factory=list)
    failed: list[UsageReportFailure] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Stripe adapter
# ---------------------------------------------------------------------------


class StripeBillingProvider:
    """Thin async wrapper over the Stripe SDK.

    The SDK is synchronous, so each call runs in a worker thread.  Every
    SDK exception is re-raised as :class:`PaymentProviderError`.
    """

    def __init__(self, settings: APISettings) -> None:
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as exc:
            logger.warning("Stripe %s failed: %s", operation, exc)
            raise PaymentProviderError(f"Payment provider {operation} failed: {exc}") from exc

    async def report_usage(
        self,
        subscription_item_id: str,
        quantity: int,
        timestamp: datetime,
        action: str = "increment",
    ) -> dict[str, Any]:
        """Push a metered quantity for one subscription item.

        Parameters
        ----------
        subscription_item_id:
            Stripe subscription item carrying the metered price.
        quantity:
            Whole units to report.
        timestamp:
            When the usage occurred.
        action:
            ``"increment"`` adds to the period total, ``"set"`` overwrites it.
        """
        if action not in _USAGE_ACTIONS:
            raise ValueError(f"action must be one of {sorted(_USAGE_ACTIONS)}, got {action!r}")

        stripe = self._get_stripe()
        record = await self._call(
            "usage report",
            stripe.SubscriptionItem.create_usage_record,
            subscription_item_id,
            quantity=quantity,
            timestamp=int(ensure_utc(timestamp).timestamp()),
            action=action,
        )
        logger.info("Reported %d unit(s) to Stripe item %s (%s)", quantity, subscription_item_id, action)
        return {
            "id": record.get("id"),
            "quantity": record.get("quantity", quantity),
            "subscription_item": subscription_item_id,
        }

    async def get_upcoming_invoice(self, customer_id: str) -> UpcomingInvoice:
        stripe = self._get_stripe()
        invoice = await self._call("upcoming invoice", stripe.Invoice.upcoming, customer=customer_id)

        lines = []
        for line in (invoice.get("lines") or {}).get("data", []):
            lines.append(
                ProviderLineItem(
                    description=line.get("description") or "",
                    quantity=line.get("quantity") or 0,
                    amount=_major_units(line.get("amount")),
                )
            )

        def _ts(value: int | None) -> datetime | None:
            return datetime.fromtimestamp(value, tz=UTC) if value else None

        return UpcomingInvoice(
            customer_id=customer_id,
            currency=(invoice.get("currency") or "usd").upper(),
            subtotal=_major_units(invoice.get("subtotal")),
            total=_major_units(invoice.get("total")),
            amount_due=_major_units(invoice.get("amount_due")),
            period_start=_ts(invoice.get("period_start")),
            period_end=_ts(invoice.get("period_end")),
            line_items=lines,
        )

    async def get_invoice_pdf_url(self, external_invoice_id: str) -> str | None:
        """Return the hosted PDF link of a finalized provider invoice."""
        stripe = self._get_stripe()
        invoice = await self._call("invoice lookup", stripe.Invoice.retrieve, external_invoice_id)
        return invoice.get("invoice_pdf")


# ---------------------------------------------------------------------------
# Usage reporting
# ---------------------------------------------------------------------------


class UsageReporter:
    """Push unreported metered usage of the current month to the provider.

    Only whole units are pushed; the fractional remainder stays pending
    until it adds up.  ``reported_usage`` is advanced after each
    successful push, so re-running never double-reports.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeBillingProvider,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._provider = provider
        self._clock = clock
        self._subscriptions = SubscriptionRepository(session)
        self._summaries = UsageSummaryRepository(session)

    async def report_pending(self, organization_id: str) -> UsageReportResult:
        subscription = await self._subscriptions.get_active(organization_id)
        if subscription is None:
            raise NoActiveSubscriptionError(organization_id)

        now = ensure_utc(self._clock())
        period_start, _ = month_bounds(now)
        items: dict[str, str] = dict(subscription.external_items_json or {})
        result = UsageReportResult(organization_id=organization_id, period_start=period_start)
        if not items:
            logger.debug("Org %s has no external subscription items; nothing to report", organization_id)
            return result

        for summary in await self._summaries.list_for_period(organization_id, period_start):
            item_id = items.get(summary.metric_id)
            if item_id is None:
                continue
            delta = math.floor(float(summary.total_usage) - float(summary.reported_usage))
            if delta <= 0:
                continue

            try:
                await self._provider.report_usage(item_id, delta, now, action="increment")
            except PaymentProviderError as exc:
                result.failed.append(UsageReportFailure(metric_id=summary.metric_id, error=str(exc)))
                continue

            await self._summaries.mark_reported(organization_id, summary.metric_id, period_start, delta)
            result.reported.append(
                UsageReportItem(metric_id=summary.metric_id, subscription_item_id=item_id, quantity=delta)
            )

        logger.info(
            "Usage report for org=%s: %d reported, %d failed",
            organization_id,
            len(result.reported),
            len(result.failed),
        )
        return result
