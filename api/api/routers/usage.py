"""Usage ingestion and usage read endpoints."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Query, status
from metering_engine.metering.anomaly import AnomalyReport
from metering_engine.models.usage import UsageMetric, UsageSummary

from api.dependencies import LimitEvaluatorDep, MeteringServiceDep
from api.schemas import BatchTrackRequest, RegisterMetricRequest, UsageEventRequest, make_period
from api.services.metering_service import BatchTrackResult, TrackResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


@router.post("/events", response_model=TrackResult, status_code=status.HTTP_201_CREATED)
async def track_event(body: UsageEventRequest, service: MeteringServiceDep) -> TrackResult:
    """Record one usage event.

    A repeated ``idempotency_key`` is acknowledged with ``duplicate=true``
    and not counted again.
    """
    return await service.track(body.to_event_data())


@router.post("/events/batch", response_model=BatchTrackResult)
async def track_batch(body: BatchTrackRequest, service: MeteringServiceDep) -> BatchTrackResult:
    """Record many events; invalid entries are reported in ``rejected``."""
    result = await service.track_batch(body.events)
    logger.info(
        "Batch ingest: %d accepted, %d duplicate(s), %d rejected, %d failed group(s)",
        len(result.accepted),
        len(result.duplicates),
        len(result.rejected),
        len(result.failed_groups),
    )
    return result


# ---------------------------------------------------------------------------
# Metric catalog
# ---------------------------------------------------------------------------


@router.get("/metrics", response_model=list[UsageMetric])
async def list_metrics(service: MeteringServiceDep) -> list[UsageMetric]:
    return await service.list_metrics()


@router.post("/metrics", response_model=UsageMetric, status_code=status.HTTP_201_CREATED)
async def register_metric(body: RegisterMetricRequest, service: MeteringServiceDep) -> UsageMetric:
    return await service.register_metric(UsageMetric(**body.model_dump()))


@router.get("/metrics/{metric_id}", response_model=UsageMetric)
async def get_metric(metric_id: str, service: MeteringServiceDep) -> UsageMetric:
    return await service.get_metric(metric_id)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/{org}/current", response_model=list[UsageSummary])
async def get_current_usage(org: str, service: MeteringServiceDep) -> list[UsageSummary]:
    """Return the running month-to-date aggregates of every metric used."""
    return await service.get_current_usage(org)


@router.get("/{org}/metrics/{metric}", response_model=UsageSummary)
async def get_usage(
    org: str,
    metric: str,
    service: MeteringServiceDep,
    start: datetime = Query(..., description="Inclusive start (ISO-8601)"),
    end: datetime = Query(..., description="Exclusive end (ISO-8601)"),
) -> UsageSummary:
    """Return the usage of one metric over ``[start, end)``."""
    return await service.get_usage(org, metric, make_period(start, end))


@router.get("/{org}/metrics/{metric}/anomalies", response_model=AnomalyReport)
async def detect_anomalies(org: str, metric: str, limits: LimitEvaluatorDep) -> AnomalyReport:
    """Compare today's usage of *metric* with its recent daily history."""
    return await limits.detect_anomalies(org, metric)
