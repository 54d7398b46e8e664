"""Exception hierarchy for the metering and billing engine.

The API layer maps each family onto an HTTP status code.  Pricing
calculations deliberately raise nothing: missing rules, empty tier
lists and zero free tiers are valid inputs that yield zero cost.
"""

from __future__ import annotations


class BillingEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(BillingEngineError):
    """Malformed input rejected before any write."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(BillingEngineError):
    """A referenced record does not exist.  Callers should not retry."""

    entity = "record"

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"{self.entity.capitalize()} not found: {identifier}")


class MetricNotFoundError(NotFoundError):
    entity = "metric"


class PlanNotFoundError(NotFoundError):
    entity = "plan"


class SubscriptionNotFoundError(NotFoundError):
    entity = "subscription"


class NoActiveSubscriptionError(NotFoundError):
    entity = "active subscription for organization"


class InvoiceNotFoundError(NotFoundError):
    entity = "invoice"


class AlertNotFoundError(NotFoundError):
    entity = "alert"


class LimitNotFoundError(NotFoundError):
    entity = "usage limit"


class ExportNotFoundError(NotFoundError):
    entity = "export"


# ---------------------------------------------------------------------------
# Store and concurrency
# ---------------------------------------------------------------------------


class StoreError(BillingEngineError):
    """Underlying persistence failure.

    Safe to retry for reads.  Retrying ``track`` is only safe when the
    event carries an idempotency key.
    """


class ConcurrencyConflictError(BillingEngineError):
    """An aggregate update lost a serialization race; retry the increment."""


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


class InvalidInvoiceTransitionError(BillingEngineError):
    """Raised when an invoice status change is not permitted."""

    def __init__(self, invoice_id: str, current: str, target: str) -> None:
        self.invoice_id = invoice_id
        self.current = current
        self.target = target
        super().__init__(f"Invoice {invoice_id} cannot move from '{current}' to '{target}'")


class ExportNotReadyError(BillingEngineError):
    """The export has not completed yet."""


class PaymentProviderError(BillingEngineError):
    """The external payment provider rejected or failed a request."""
