"""Plan catalog and subscription endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query, status
from metering_engine.models.billing import PlanCostEstimate, Subscription
from metering_engine.models.plan import BillingPlan

from api.dependencies import PlanCatalogDep
from api.schemas import SubscribeRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plans", tags=["plans"])
subscriptions_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("", response_model=list[BillingPlan])
async def list_plans(
    catalog: PlanCatalogDep,
    active_only: bool = Query(default=True),
) -> list[BillingPlan]:
    return await catalog.list_plans(active_only=active_only)


@router.post("", response_model=BillingPlan, status_code=status.HTTP_201_CREATED)
async def register_plan(plan: BillingPlan, catalog: PlanCatalogDep) -> BillingPlan:
    """Publish a plan.  Re-posting identical content is a no-op."""
    return await catalog.register_plan(plan)


@router.get("/{org}/compare", response_model=list[PlanCostEstimate])
async def compare_plans(org: str, catalog: PlanCatalogDep) -> list[PlanCostEstimate]:
    """Estimate every active plan's cost for the organization's recent usage."""
    return await catalog.compare_plans(org)


@router.get("/{plan_id}", response_model=BillingPlan)
async def get_plan(plan_id: str, catalog: PlanCatalogDep) -> BillingPlan:
    return await catalog.get_plan(plan_id)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


@subscriptions_router.post("", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def subscribe(body: SubscribeRequest, catalog: PlanCatalogDep) -> Subscription:
    """Subscribe an organization to a plan, replacing its active subscription."""
    return await catalog.subscribe(
        body.organization_id,
        body.plan_id,
        body.period_start,
        external_customer_id=body.external_customer_id,
        external_subscription_id=body.external_subscription_id,
        external_item_ids=body.external_item_ids,
    )


@subscriptions_router.get("/{org}", response_model=Subscription)
async def get_active_subscription(org: str, catalog: PlanCatalogDep) -> Subscription:
    return await catalog.get_active_subscription(org)
