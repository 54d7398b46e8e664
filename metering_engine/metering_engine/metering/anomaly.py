"""Usage anomaly detection using Z-score and IQR methods.

Compares the latest daily usage of a metric against its recent history.
Severity is classified on standard deviation distance:

- **info**: below ``z_score_warning`` but flagged by z-score or IQR fence
- **warning**: ``z_score_warning`` to ``z_score_critical`` standard deviations
- **critical**: at or above ``z_score_critical`` standard deviations

The detector is deterministic and stateless.
"""

from __future__ import annotations

import logging
import math

from pydantic import BaseModel, Field

from metering_engine.models.usage import AlertSeverity

logger = logging.getLogger(__name__)


class AnomalyReport(BaseModel):
    """Anomaly analysis for a single metric's daily usage history."""

    metric_id: str
    is_anomaly: bool = False
    anomaly_type: str = Field(default="none", description="'spike', 'drop', or 'none'.")
    severity: AlertSeverity | None = None
    z_score: float = 0.0
    mean: float = 0.0
    latest: float = 0.0
    percentile: float = Field(default=50.0, ge=0.0, le=100.0)
    message: str = "No anomaly detected."


class UsageAnomalyDetector:
    """Detect usage spikes and drops.

    Parameters
    ----------
    z_score_minor:
        Minimum absolute z-score for an anomaly (default 2.0).
    z_score_warning:
        Z-score at which severity becomes warning (default 3.0).
    z_score_critical:
        Z-score at which severity becomes critical (default 4.0).
    iqr_factor:
        IQR multiplier for the fence (default 1.5).
    min_points:
        Minimum history length before any detection is attempted.
    """

    def __init__(
        self,
        z_score_minor: float = 2.0,
        z_score_warning: float = 3.0,
        z_score_critical: float = 4.0,
        iqr_factor: float = 1.5,
        min_points: int = 3,
    ) -> None:
        self._z_minor = z_score_minor
        self._z_warning = z_score_warning
        self._z_critical = z_score_critical
        self._iqr_factor = iqr_factor
        self._min_points = min_points

    def detect(
        self,
        metric_id: str,
        history: list[float],
        latest: float | None = None,
    ) -> AnomalyReport:
        """Analyse *history* (oldest first) and classify *latest*.

        When *latest* is ``None`` the last element of *history* is used and
        excluded from the baseline.
        """
        baseline = list(history)
        if latest is None and baseline:
            latest = baseline.pop()

        if latest is None or len(baseline) < self._min_points:
            return AnomalyReport(
                metric_id=metric_id,
                message=f"Insufficient data (< {self._min_points} points) for anomaly detection.",
            )

        mean = sum(baseline) / len(baseline)
        variance = sum((x - mean) ** 2 for x in baseline) / len(baseline)
        std_dev = math.sqrt(variance) if variance > 0 else 0.0

        z_score = 0.0
        if std_dev > 0:
            z_score = (latest - mean) / std_dev
            abs_z = abs(z_score)
        else:
            # Any deviation from a constant baseline is maximally surprising.
            abs_z = math.inf if latest != mean else 0.0

        ordered = sorted(baseline)
        q1 = self._percentile(ordered, 25)
        q3 = self._percentile(ordered, 75)
        iqr = q3 - q1
        lower_fence = q1 - self._iqr_factor * iqr
        upper_fence = q3 + self._iqr_factor * iqr

        below = sum(1 for x in baseline if x < latest)
        equal = sum(1 for x in baseline if x == latest)
        percentile = round((below + 0.5 * equal) / len(baseline) * 100.0, 2)

        iqr_anomaly = latest < lower_fence or latest > upper_fence
        is_anomaly = abs_z >= self._z_minor or iqr_anomaly

        if not is_anomaly:
            return AnomalyReport(
                metric_id=metric_id,
                z_score=round(z_score, 4),
                mean=round(mean, 6),
                latest=latest,
                percentile=percentile,
            )

        if abs_z >= self._z_critical:
            severity = AlertSeverity.CRITICAL
        elif abs_z >= self._z_warning:
            severity = AlertSeverity.WARNING
        else:
            severity = AlertSeverity.INFO

        anomaly_type = "spike" if latest > mean else "drop"
        direction = "above" if anomaly_type == "spike" else "below"
        message = (
            f"Usage {anomaly_type} on {metric_id}: latest {latest:g} is "
            f"{abs_z:.1f} std devs {direction} the mean {mean:.2f}."
        )
        logger.debug("Anomaly detected for %s: %s (z=%.2f)", metric_id, anomaly_type, z_score)

        return AnomalyReport(
            metric_id=metric_id,
            is_anomaly=True,
            anomaly_type=anomaly_type,
            severity=severity,
            z_score=round(z_score, 4),
            mean=round(mean, 6),
            latest=latest,
            percentile=percentile,
            message=message,
        )

    @staticmethod
    def _percentile(sorted_data: list[float], p: float) -> float:
        """Compute the p-th percentile of sorted data using linear interpolation."""
        if not sorted_data:
            return 0.0
        n = len(sorted_data)
        if n == 1:
            return sorted_data[0]
        k = (p / 100.0) * (n - 1)
        lower = math.floor(k)
        upper = min(lower + 1, n - 1)
        fraction = k - lower
        return sorted_data[lower] + fraction * (sorted_data[upper] - sorted_data[lower])
