"""Domain models shared by the pricing engine, the state layer and the API."""

from metering_engine.models.billing import (
    DateRange,
    Invoice,
    InvoiceStatus,
    LineItem,
    LineItemType,
    PlanCostEstimate,
    Subscription,
    SubscriptionStatus,
    TierUsageBreakdown,
    UpgradePreview,
    UsageCostCalculation,
    UsageCostDetail,
)
from metering_engine.models.plan import (
    BillingInterval,
    BillingPlan,
    PricingModel,
    PricingRule,
    Tier,
    UsageLimitTemplate,
)
from metering_engine.models.usage import (
    UNLIMITED,
    AlertSeverity,
    AlertType,
    ExportFormat,
    ExportStatus,
    LimitStatus,
    LimitType,
    ResetPeriod,
    UsageAlert,
    UsageEvent,
    UsageExport,
    UsageLimit,
    UsageMetric,
    UsageSummary,
)

__all__ = [
    "UNLIMITED",
    "AlertSeverity",
    "AlertType",
    "BillingInterval",
    "BillingPlan",
    "DateRange",
    "ExportFormat",
    "ExportStatus",
    "Invoice",
    "InvoiceStatus",
    "LimitStatus",
    "LimitType",
    "LineItem",
    "LineItemType",
    "PlanCostEstimate",
    "PricingModel",
    "PricingRule",
    "ResetPeriod",
    "Subscription",
    "SubscriptionStatus",
    "Tier",
    "TierUsageBreakdown",
    "UpgradePreview",
    "UsageAlert",
    "UsageCostCalculation",
    "UsageCostDetail",
    "UsageEvent",
    "UsageExport",
    "UsageLimit",
    "UsageLimitTemplate",
    "UsageMetric",
    "UsageSummary",
]
