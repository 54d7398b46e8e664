"""Usage ingestion: event log appends, aggregate increments and limit checks.

Every tracked event is appended to the event log and added to the
calendar-month aggregate for its organization and metric in the same
transaction.  The aggregate increment is a single atomic upsert, so
concurrent writers for the same (organization, metric) never lose an
update.  Once the write succeeds the limit evaluator runs for the
affected metric; alerting failures are logged there and never reach the
caller.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import pydantic
from metering_engine.errors import (
    ConcurrencyConflictError,
    MetricNotFoundError,
    StoreError,
    ValidationError,
)
from metering_engine.metering.periods import ensure_utc, month_bounds
from metering_engine.models.billing import DateRange
from metering_engine.models.plan import BillingPlan
from metering_engine.models.usage import UsageAlert, UsageEvent, UsageMetric, UsageSummary
from metering_engine.pricing.engine import calculate_metric_cost
from metering_engine.state.repository import (
    UsageEventRepository,
    UsageMetricRepository,
    UsageSummaryRepository,
    metric_from_row,
)
from pydantic import BaseModel, Field
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.limit_service import LimitEvaluator
from api.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

# SQLSTATEs for serialization failure and deadlock.
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

GroupKey = tuple[str, str, datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TrackResult(BaseModel):
    """Outcome of recording a single usage event."""

    event_id: str
    organization_id: str
    metric_id: str
    duplicate: bool = False
    total_usage: float
    period_start: datetime
    period_end: datetime
    alerts: list[UsageAlert] = Field(default_factory=list)


class RejectedEvent(BaseModel):
    index: int
    event_id: str | None = None
    reason: str


class FailedGroup(BaseModel):
    """A (organization, metric, month) group whose write was rolled back."""

    organization_id: str
    metric_id: str
    period_start: datetime
    event_ids: list[str]
    error: str


class BatchTrackResult(BaseModel):
    accepted: list[str] = Field(default_factory=list)
    duplicates: list[str] = Field(default_factory=list)
    rejected: list[RejectedEvent] = Field(default_factory=list)
    failed_groups: list[FailedGroup] = Field(default_factory=list)
    alerts: list[UsageAlert] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def coerce_event(raw: UsageEvent | Mapping[str, Any]) -> UsageEvent:
    """Return *raw* as a validated :class:`UsageEvent`.

    Raises
    ------
    ValidationError
        If required fields are missing or the quantity is negative.
    """
    if isinstance(raw, UsageEvent):
        return raw
    try:
        return UsageEvent.model_validate(dict(raw))
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'event'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid usage event: {problems}") from exc
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid usage event: {exc}") from exc


def translate_store_error(exc: SQLAlchemyError) -> Exception:
    """Map a SQLAlchemy failure onto the engine's store error family."""
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        candidates = (orig, getattr(orig, "__cause__", None))
        for candidate in candidates:
            sqlstate = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
            if sqlstate in _RETRYABLE_SQLSTATES:
                return ConcurrencyConflictError(f"Aggregate update lost a serialization race: {orig}")
    return StoreError(str(exc))


class MeteringService:
    """Record usage and serve aggregate reads.

    Parameters
    ----------
    session:
        Request-scoped database session.  The caller owns the commit.
    limit_evaluator:
        Run after every successful write.  ``None`` disables limit checks.
    plan_catalog:
        Used to derive ``current_cost`` from the active plan.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        limit_evaluator: LimitEvaluator | None = None,
        plan_catalog: PlanCatalog | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._events = UsageEventRepository(session)
        self._summaries = UsageSummaryRepository(session)
        self._metrics = UsageMetricRepository(session)
        self._limits = limit_evaluator
        self._catalog = plan_catalog
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def track(self, event: UsageEvent | Mapping[str, Any]) -> TrackResult:
        """Record one usage event and update its monthly aggregate."""
        event = coerce_event(event)
        org_id, metric_id = event.organization_id, event.metric_id
        period_start, period_end = month_bounds(event.timestamp)

        try:
            duplicate = False
            if event.idempotency_key:
                seen = await self._events.existing_idempotency_keys(org_id, [event.idempotency_key])
                duplicate = bool(seen)

            if not duplicate:
                try:
                    async with self._session.begin_nested():
                        await self._events.append([event])
                        await self._summaries.increment(org_id, metric_id, period_start, period_end, event.quantity)
                except IntegrityError:
                    # A concurrent request stored the same idempotency key first.
                    if not event.idempotency_key:
                        raise
                    duplicate = True

            total = await self._summaries.get_total(org_id, metric_id, period_start)
        except SQLAlchemyError as exc:
            logger.error("Failed to record usage for org=%s metric=%s", org_id, metric_id, exc_info=True)
            raise translate_store_error(exc) from exc

        if duplicate:
            logger.info(
                "Duplicate usage event for org=%s key=%s acknowledged",
                org_id,
                event.idempotency_key,
            )
            return TrackResult(
                event_id=event.event_id,
                organization_id=org_id,
                metric_id=metric_id,
                duplicate=True,
                total_usage=total,
                period_start=period_start,
                period_end=period_end,
            )

        alerts = await self._evaluate(org_id, metric_id)
        logger.debug("Tracked %g %s for org=%s (total=%g)", event.quantity, metric_id, org_id, total)
        return TrackResult(
            event_id=event.event_id,
            organization_id=org_id,
            metric_id=metric_id,
            total_usage=total,
            period_start=period_start,
            period_end=period_end,
            alerts=alerts,
        )

    async def track_batch(self, events: Sequence[UsageEvent | Mapping[str, Any]]) -> BatchTrackResult:
        """Record many events with one aggregate update per group.

        Valid events are grouped by (organization, metric, month).  Each
        group is written inside its own savepoint, so a failing group is
        rolled back and reported without touching the others.  Limits
        are evaluated once per affected (organization, metric).
        """
        result = BatchTrackResult()

        valid: list[UsageEvent] = []
        for index, raw in enumerate(events):
            try:
                valid.append(coerce_event(raw))
            except ValidationError as exc:
                event_id = raw.get("event_id") if isinstance(raw, Mapping) else None
                result.rejected.append(RejectedEvent(index=index, event_id=event_id, reason=str(exc)))

        fresh = await self._drop_duplicates(valid, result.duplicates)

        groups: dict[GroupKey, list[UsageEvent]] = defaultdict(list)
        for event in fresh:
            period_start, _ = month_bounds(event.timestamp)
            groups[(event.organization_id, event.metric_id, period_start)].append(event)

        affected: set[tuple[str, str]] = set()
        for (org_id, metric_id, period_start), group in groups.items():
            _, period_end = month_bounds(period_start)
            quantity = sum(event.quantity for event in group)
            try:
                async with self._session.begin_nested():
                    await self._events.append(group)
                    await self._summaries.increment(org_id, metric_id, period_start, period_end, quantity)
            except SQLAlchemyError as exc:
                logger.warning(
                    "Batch group org=%s metric=%s period=%s rolled back",
                    org_id,
                    metric_id,
                    period_start.date(),
                    exc_info=True,
                )
                result.failed_groups.append(
                    FailedGroup(
                        organization_id=org_id,
                        metric_id=metric_id,
                        period_start=period_start,
                        event_ids=[event.event_id for event in group],
                        error=str(translate_store_error(exc)),
                    )
                )
                continue
            result.accepted.extend(event.event_id for event in group)
            affected.add((org_id, metric_id))

        for org_id, metric_id in sorted(affected):
            result.alerts.extend(await self._evaluate(org_id, metric_id))

        logger.info(
            "Batch tracked: accepted=%d duplicates=%d rejected=%d failed_groups=%d",
            len(result.accepted),
            len(result.duplicates),
            len(result.rejected),
            len(result.failed_groups),
        )
        return result

    async def _drop_duplicates(self, events: list[UsageEvent], duplicates: list[str]) -> list[UsageEvent]:
        """Filter out events whose idempotency key was already used."""
        keys_by_org: dict[str, set[str]] = defaultdict(set)
        for event in events:
            if event.idempotency_key:
                keys_by_org[event.organization_id].add(event.idempotency_key)

        stored: dict[str, set[str]] = {}
        try:
            for org_id, keys in keys_by_org.items():
                stored[org_id] = await self._events.existing_idempotency_keys(org_id, keys)
        except SQLAlchemyError as exc:
            raise translate_store_error(exc) from exc

        fresh: list[UsageEvent] = []
        seen: set[tuple[str, str]] = set()
        for event in events:
            key = event.idempotency_key
            if key:
                marker = (event.organization_id, key)
                if key in stored.get(event.organization_id, set()) or marker in seen:
                    duplicates.append(event.event_id)
                    continue
                seen.add(marker)
            fresh.append(event)
        return fresh

    async def _evaluate(self, organization_id: str, metric_id: str) -> list[UsageAlert]:
        if self._limits is None:
            return []
        return await self._limits.evaluate_metric(organization_id, metric_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_usage(self, organization_id: str, metric_id: str, period: DateRange) -> UsageSummary:
        """Sum the event log for one metric over an arbitrary period."""
        try:
            totals = await self._events.sum_by_metric(organization_id, period.start, period.end, metric_id)
            catalog = await self._metrics.lookup([metric_id])
            plan = await self._active_plan(organization_id)
        except SQLAlchemyError as exc:
            raise translate_store_error(exc) from exc

        metric = catalog.get(metric_id)
        summary = UsageSummary(
            organization_id=organization_id,
            metric_id=metric_id,
            metric_name=metric.name if metric else metric_id,
            period_start=period.start,
            period_end=period.end,
            total_usage=totals.get(metric_id, 0.0),
            unit=metric.unit if metric else "units",
        )
        return self._with_cost(summary, plan)

    async def get_current_usage(self, organization_id: str) -> list[UsageSummary]:
        """Return this month's aggregates for every metric the organization used."""
        period_start, period_end = month_bounds(ensure_utc(self._clock()))
        try:
            rows = await self._summaries.list_for_period(organization_id, period_start)
            catalog = await self._metrics.lookup(row.metric_id for row in rows)
            plan = await self._active_plan(organization_id)
        except SQLAlchemyError as exc:
            raise translate_store_error(exc) from exc

        summaries: list[UsageSummary] = []
        for row in rows:
            metric = catalog.get(row.metric_id)
            summary = UsageSummary(
                organization_id=organization_id,
                metric_id=row.metric_id,
                metric_name=metric.name if metric else row.metric_id,
                period_start=period_start,
                period_end=period_end,
                total_usage=row.total_usage,
                unit=metric.unit if metric else "units",
            )
            summaries.append(self._with_cost(summary, plan))
        return summaries

    async def _active_plan(self, organization_id: str) -> BillingPlan | None:
        if self._catalog is None:
            return None
        active = await self._catalog.find_active_plan(organization_id)
        return active[1] if active is not None else None

    @staticmethod
    def _with_cost(summary: UsageSummary, plan: BillingPlan | None) -> UsageSummary:
        if plan is None:
            return summary
        rule = plan.rule_for(summary.metric_id)
        cost = calculate_metric_cost(summary, rule).total_cost if rule is not None else 0.0
        return summary.model_copy(update={"current_cost": cost})

    # ------------------------------------------------------------------
    # Metric catalog
    # ------------------------------------------------------------------

    async def register_metric(self, metric: UsageMetric) -> UsageMetric:
        """Add *metric* to the catalog.

        Registering identical data twice is a no-op.  Different data
        under an existing id is rejected because catalog entries are
        immutable.
        """
        try:
            created = await self._metrics.create_if_absent(metric)
            if created:
                logger.info("Registered metric %s (%s)", metric.id, metric.unit)
                return metric
            row = await self._metrics.get(metric.id)
        except SQLAlchemyError as exc:
            raise translate_store_error(exc) from exc

        existing = metric_from_row(row).model_dump() if row is not None else None
        if existing != metric.model_dump():
            raise ValidationError(f"Metric {metric.id} is already registered with different attributes")
        return metric

    async def list_metrics(self) -> list[UsageMetric]:
        return [metric_from_row(row) for row in await self._metrics.list_all()]

    async def get_metric(self, metric_id: str) -> UsageMetric:
        try:
            row = await self._metrics.get(metric_id)
        except SQLAlchemyError as exc:
            raise translate_store_error(exc) from exc
        if row is None:
            raise MetricNotFoundError(metric_id)
        return metric_from_row(row)
