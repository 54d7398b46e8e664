"""Metering primitives: aggregation windows and usage anomaly detection."""

from metering_engine.metering.anomaly import AnomalyReport, UsageAnomalyDetector
from metering_engine.metering.periods import (
    add_interval,
    ensure_utc,
    month_bounds,
    reset_window,
)

__all__ = [
    "AnomalyReport",
    "UsageAnomalyDetector",
    "add_interval",
    "ensure_utc",
    "month_bounds",
    "reset_window",
]
