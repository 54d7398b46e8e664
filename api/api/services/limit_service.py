"""Usage limit evaluation, alerting and limit management.

After every tracked event the evaluator compares the organization's
usage in each limit window against the configured thresholds and raises
alerts.  At most one unresolved alert of a given type exists per
(organization, metric): an existing unresolved alert suppresses new
ones, and the insert itself is ``ON CONFLICT DO NOTHING`` against a
partial unique index so concurrent evaluations cannot race past that
check.  Alerting never fails the caller: errors are logged and the
metric is skipped.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from metering_engine.config import Settings, load_settings
from metering_engine.errors import AlertNotFoundError, LimitNotFoundError
from metering_engine.metering.anomaly import AnomalyReport, UsageAnomalyDetector
from metering_engine.metering.periods import ensure_utc, reset_window
from metering_engine.models.plan import BillingPlan
from metering_engine.models.usage import (
    AlertSeverity,
    AlertType,
    LimitStatus,
    LimitType,
    ResetPeriod,
    UsageAlert,
    UsageLimit,
)
from metering_engine.state.repository import (
    UsageAlertRepository,
    UsageEventRepository,
    UsageLimitRepository,
    UsageSummaryRepository,
    alert_from_row,
    limit_from_row,
)
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LimitEvaluator:
    """Evaluate usage limits for one request's session.

    Parameters
    ----------
    session:
        Request-scoped database session.
    event_bus:
        Receives ``usage.alert_raised`` and related notifications.
    settings:
        Engine settings (anomaly lookback and sensitivity).
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        event_bus: EventBus | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._bus = event_bus
        self._settings = settings or load_settings()
        self._clock = clock
        self._limits = UsageLimitRepository(session)
        self._alerts = UsageAlertRepository(session)
        self._summaries = UsageSummaryRepository(session)
        self._events = UsageEventRepository(session)
        self._detector = UsageAnomalyDetector(
            z_score_minor=self._settings.anomaly_z_score,
            min_points=self._settings.anomaly_min_points,
        )

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    async def _emit(self, event_type: EventType, organization_id: str, data: dict) -> None:
        if self._bus is not None:
            await self._bus.emit(event_type, organization_id=organization_id, data=data)

    async def _usage_in_window(self, limit: UsageLimit, at: datetime) -> tuple[float, datetime, datetime]:
        """Return usage of the limit's metric in the reset window containing *at*.

        Monthly windows read the running aggregate; other windows sum the
        event log.
        """
        start, end = reset_window(limit.reset_period, at)
        if limit.reset_period is ResetPeriod.MONTHLY:
            usage = await self._summaries.get_total(limit.organization_id, limit.metric_id, start)
        else:
            totals = await self._events.sum_by_metric(limit.organization_id, start, end, limit.metric_id)
            usage = totals.get(limit.metric_id, 0.0)
        return usage, start, end

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def check_limits(self, organization_id: str) -> list[LimitStatus]:
        """Merge every active limit with its current usage window."""
        now = self._now()
        statuses: list[LimitStatus] = []
        for row in await self._limits.list_active(organization_id):
            limit = limit_from_row(row)
            usage, start, end = await self._usage_in_window(limit, now)
            if limit.is_unlimited:
                percentage, over = 0.0, False
            else:
                percentage = round(usage / limit.limit_value * 100.0, 2)
                over = usage >= limit.limit_value
            statuses.append(
                LimitStatus(
                    limit=limit,
                    current_usage=usage,
                    percentage_used=percentage,
                    is_over_limit=over,
                    window_start=start,
                    window_end=end,
                )
            )
        return statuses

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_metric(self, organization_id: str, metric_id: str) -> list[UsageAlert]:
        """Raise threshold and hard-limit alerts for one metric.

        Runs inside a savepoint so that a failure here never discards the
        usage write that triggered it.  Returns the alerts actually created.
        """
        try:
            async with self._session.begin_nested():
                return await self._evaluate(organization_id, metric_id)
        except Exception:
            logger.warning(
                "Limit evaluation failed for org=%s metric=%s",
                organization_id,
                metric_id,
                exc_info=True,
            )
            return []

    async def _evaluate(self, organization_id: str, metric_id: str) -> list[UsageAlert]:
        now = self._now()
        raised: list[UsageAlert] = []

        for row in await self._limits.list_active(organization_id, metric_id):
            limit = limit_from_row(row)
            if limit.is_unlimited:
                continue

            usage, _, _ = await self._usage_in_window(limit, now)
            percentage = usage / limit.limit_value * 100.0

            for threshold in limit.thresholds:
                if percentage < threshold:
                    break
                alert = await self._raise_alert(
                    organization_id,
                    metric_id,
                    AlertType.THRESHOLD_EXCEEDED,
                    threshold_percentage=threshold,
                    current_usage=usage,
                    limit_value=limit.limit_value,
                    severity=AlertSeverity.for_percentage(percentage),
                    message=(
                        f"{metric_id} usage is at {percentage:.1f}% of the "
                        f"{limit.reset_period.value} limit {limit.limit_value:g} "
                        f"(threshold {threshold:g}%)"
                    ),
                    at=now,
                )
                if alert is not None:
                    raised.append(alert)

            if limit.limit_type is LimitType.HARD and usage >= limit.limit_value:
                alert = await self._raise_alert(
                    organization_id,
                    metric_id,
                    AlertType.LIMIT_EXCEEDED,
                    threshold_percentage=100.0,
                    current_usage=usage,
                    limit_value=limit.limit_value,
                    severity=AlertSeverity.for_percentage(percentage),
                    message=(
                        f"{metric_id} usage {usage:g} has reached the hard "
                        f"{limit.reset_period.value} limit {limit.limit_value:g}"
                    ),
                    at=now,
                )
                if alert is not None:
                    raised.append(alert)

        return raised

    async def _raise_alert(
        self,
        organization_id: str,
        metric_id: str,
        alert_type: AlertType,
        *,
        threshold_percentage: float,
        current_usage: float,
        limit_value: float,
        severity: AlertSeverity,
        message: str,
        at: datetime,
    ) -> UsageAlert | None:
        """Insert an alert unless an unresolved one of the same type exists."""
        existing = await self._alerts.find_unresolved(organization_id, metric_id, alert_type)
        if existing is not None:
            logger.debug(
                "Suppressed %s alert for org=%s metric=%s (unresolved %s)",
                alert_type.value,
                organization_id,
                metric_id,
                existing.alert_id,
            )
            return None

        alert = UsageAlert(
            id=uuid.uuid4().hex,
            organization_id=organization_id,
            metric_id=metric_id,
            alert_type=alert_type,
            threshold_percentage=threshold_percentage,
            current_usage=current_usage,
            limit_value=limit_value,
            severity=severity,
            message=message,
            created_at=at,
        )
        try:
            async with self._session.begin_nested():
                inserted = await self._alerts.insert_if_absent(alert)
        except Exception:
            logger.warning(
                "Failed to create %s alert for org=%s metric=%s",
                alert_type.value,
                organization_id,
                metric_id,
                exc_info=True,
            )
            return None

        if not inserted:
            return None

        logger.info(
            "Alert %s raised for org=%s metric=%s severity=%s",
            alert_type.value,
            organization_id,
            metric_id,
            severity.value,
        )
        await self._emit(
            EventType.ALERT_RAISED,
            organization_id,
            {
                "alert_id": alert.id,
                "metric_id": metric_id,
                "alert_type": alert_type.value,
                "severity": severity.value,
                "threshold_percentage": threshold_percentage,
                "current_usage": current_usage,
            },
        )
        return alert

    async def detect_anomalies(self, organization_id: str, metric_id: str) -> AnomalyReport:
        """Run spike/drop detection on the metric's daily totals.

        The baseline is the ``anomaly_lookback_days`` days before today,
        with days without usage counted as zero.  Today's total is the
        value under test.  Spikes raise an ``anomaly_detected`` alert.
        """
        now = self._now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        days = self._settings.anomaly_lookback_days
        start = today - timedelta(days=days)
        end = today + timedelta(days=1)

        totals = await self._events.daily_totals(organization_id, metric_id, start, end)
        history = [totals.get((start + timedelta(days=offset)).date().isoformat(), 0.0) for offset in range(days + 1)]
        report = self._detector.detect(metric_id, history)

        if report.is_anomaly and report.anomaly_type == "spike":
            try:
                async with self._session.begin_nested():
                    await self._raise_alert(
                        organization_id,
                        metric_id,
                        AlertType.ANOMALY_DETECTED,
                        threshold_percentage=report.percentile,
                        current_usage=report.latest,
                        limit_value=report.mean,
                        severity=report.severity or AlertSeverity.INFO,
                        message=report.message,
                        at=now,
                    )
            except Exception:
                logger.warning(
                    "Anomaly alerting failed for org=%s metric=%s",
                    organization_id,
                    metric_id,
                    exc_info=True,
                )
        return report

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def acknowledge_alert(self, alert_id: str) -> UsageAlert:
        """Resolve an alert.  Acknowledging a resolved alert is a no-op."""
        row = await self._alerts.get(alert_id)
        if row is None:
            raise AlertNotFoundError(alert_id)

        if await self._alerts.resolve(alert_id, self._now()):
            logger.info("Alert %s acknowledged for org=%s", alert_id, row.organization_id)
            await self._emit(
                EventType.ALERT_ACKNOWLEDGED,
                row.organization_id,
                {"alert_id": alert_id, "metric_id": row.metric_id, "alert_type": row.alert_type},
            )

        refreshed = await self._alerts.get(alert_id)
        return alert_from_row(refreshed if refreshed is not None else row)

    async def list_alerts(self, organization_id: str, include_resolved: bool = False) -> list[UsageAlert]:
        rows = await self._alerts.list_for_organization(organization_id, include_resolved=include_resolved)
        return [alert_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Limit management
    # ------------------------------------------------------------------

    async def set_limit(self, limit: UsageLimit) -> UsageLimit:
        """Create or replace the limit for (organization, metric, reset period)."""
        row = await self._limits.upsert(limit)
        stored = limit_from_row(row)
        logger.info(
            "Limit set for org=%s metric=%s: %s %g/%s",
            stored.organization_id,
            stored.metric_id,
            stored.limit_type.value,
            stored.limit_value,
            stored.reset_period.value,
        )
        await self._emit(
            EventType.LIMIT_UPDATED,
            stored.organization_id,
            {
                "limit_id": stored.id,
                "metric_id": stored.metric_id,
                "limit_value": stored.limit_value,
                "reset_period": stored.reset_period.value,
            },
        )
        return stored

    async def list_limits(self, organization_id: str) -> list[UsageLimit]:
        return [limit_from_row(row) for row in await self._limits.list_active(organization_id)]

    async def remove_limit(self, organization_id: str, limit_id: str) -> None:
        """Deactivate a limit owned by *organization_id*."""
        if not await self._limits.deactivate(organization_id, limit_id):
            raise LimitNotFoundError(limit_id)
        await self._emit(EventType.LIMIT_UPDATED, organization_id, {"limit_id": limit_id, "removed": True})

    async def apply_plan_limits(self, organization_id: str, plan: BillingPlan) -> list[UsageLimit]:
        """Materialise *plan*'s limit templates for the organization."""
        applied: list[UsageLimit] = []
        for template in plan.limit_templates:
            applied.append(
                await self.set_limit(
                    UsageLimit(
                        organization_id=organization_id,
                        metric_id=template.metric_id,
                        limit_type=template.limit_type,
                        limit_value=template.limit_value,
                        reset_period=template.reset_period,
                        thresholds=list(template.thresholds),
                    )
                )
            )
        return applied
