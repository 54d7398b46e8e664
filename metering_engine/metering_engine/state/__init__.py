"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from metering_engine.state.database import get_engine, get_session, get_session_factory
from metering_engine.state.repository import (
    InvoiceRepository,
    PlanRepository,
    SubscriptionRepository,
    UsageAlertRepository,
    UsageEventRepository,
    UsageExportRepository,
    UsageLimitRepository,
    UsageMetricRepository,
    UsageSummaryRepository,
)

__all__ = [
    "InvoiceRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "UsageAlertRepository",
    "UsageEventRepository",
    "UsageExportRepository",
    "UsageLimitRepository",
    "UsageMetricRepository",
    "UsageSummaryRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
