"""Usage limit and alert endpoints."""

from __future__ import annotations

import logging

import pydantic
from fastapi import APIRouter, Query, status
from metering_engine.errors import ValidationError
from metering_engine.models.usage import LimitStatus, UsageAlert, UsageLimit

from api.dependencies import LimitEvaluatorDep
from api.schemas import SetLimitRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/limits", tags=["limits"])
alerts_router = APIRouter(prefix="/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


@router.get("/{org}", response_model=list[LimitStatus])
async def check_limits(org: str, limits: LimitEvaluatorDep) -> list[LimitStatus]:
    """Return every active limit with the usage of its current window."""
    return await limits.check_limits(org)


@router.put("/{org}", response_model=UsageLimit)
async def set_limit(org: str, body: SetLimitRequest, limits: LimitEvaluatorDep) -> UsageLimit:
    """Create or replace the limit for (metric, reset period).

    ``limit_value`` of ``-1`` means unlimited.
    """
    try:
        limit = UsageLimit(organization_id=org, **body.model_dump())
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid usage limit: {exc.errors()[0]['msg']}") from exc
    return await limits.set_limit(limit)


@router.delete("/{org}/{limit_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_limit(org: str, limit_id: str, limits: LimitEvaluatorDep) -> None:
    await limits.remove_limit(org, limit_id)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@alerts_router.get("/{org}", response_model=list[UsageAlert])
async def list_alerts(
    org: str,
    limits: LimitEvaluatorDep,
    include_resolved: bool = Query(default=False),
) -> list[UsageAlert]:
    return await limits.list_alerts(org, include_resolved=include_resolved)


@alerts_router.post("/{alert_id}/acknowledge", response_model=UsageAlert)
async def acknowledge_alert(alert_id: str, limits: LimitEvaluatorDep) -> UsageAlert:
    """Resolve an alert so the same breach can alert again."""
    return await limits.acknowledge_alert(alert_id)
