"""
Deal API endpoints.
"""
from fastapi import APIRouter, Depends, Query
from starlette import status

from app.api.errors import raise_engine_error
from app.core.deps import get_analytics_service, get_deal_service
from app.core.exceptions import EngineError
from app.models.deal import DealStatus
from app.schemas.deal import (
    DealCreate,
    DealListResponse,
    DealMove,
    DealResponse,
    DealSummaryResponse,
    DealUpdate,
    StageHistoryResponse,
)
from app.services.analytics_service import PipelineAnalyticsService
from app.services.deal_service import DealService


router = APIRouter()


# ──────────────────────────────────────────────
# CRUD
# ──────────────────────────────────────────────

@router.get("", response_model=DealListResponse)
async def list_deals(
    organization_id: str = Query(..., min_length=1),
    pipeline_id: int | None = Query(default=None),
    stage_id: int | None = Query(default=None),
    status_filter: DealStatus | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None),
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=50, ge=1, le=200, description="Items per page"),
    svc: DealService = Depends(get_deal_service),
):
    """List deals with pagination."""
    offset = (page - 1) * page_size
    items, total = await svc.get_deals(
        organization_id,
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        status=status_filter,
        assigned_to=assigned_to,
        offset=offset,
        limit=page_size,
    )

    total_pages = (total + page_size - 1) // page_size

    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


@router.post("", response_model=DealResponse, status_code=status.HTTP_201_CREATED)
async def create_deal(
    data: DealCreate,
    organization_id: str = Query(..., min_length=1),
    actor_id: str = Query(..., min_length=1),
    svc: DealService = Depends(get_deal_service),
):
    """Create a deal on its initial stage and open its first history entry."""
    try:
        return await svc.create_deal(organization_id, data, created_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.get("/analytics/summary", response_model=DealSummaryResponse)
async def get_deal_summary(
    organization_id: str = Query(..., min_length=1),
    period_days: int = Query(default=30, ge=1, le=365),
    pipeline_id: int | None = Query(default=None),
    analytics: PipelineAnalyticsService = Depends(get_analytics_service),
):
    """Won/lost totals and win rate for recently created deals."""
    return await analytics.deal_summary(organization_id, period_days=period_days, pipeline_id=pipeline_id)


@router.get("/{deal_id}", response_model=DealResponse)
async def get_deal(
    deal_id: int,
    svc: DealService = Depends(get_deal_service),
):
    try:
        return await svc.get_deal(deal_id)
    except EngineError as e:
        raise_engine_error(e)


@router.patch("/{deal_id}", response_model=DealResponse)
async def update_deal(
    deal_id: int,
    data: DealUpdate,
    actor_id: str = Query(..., min_length=1),
    svc: DealService = Depends(get_deal_service),
):
    """Update deal details. A new stage_id moves the deal as part of the update."""
    try:
        deal = await svc.get_deal(deal_id)
        return await svc.update_deal(deal, data, updated_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deal(
    deal_id: int,
    actor_id: str = Query(..., min_length=1),
    svc: DealService = Depends(get_deal_service),
):
    try:
        deal = await svc.get_deal(deal_id)
        await svc.delete_deal(deal, deleted_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


# ──────────────────────────────────────────────
# Stage management
# ──────────────────────────────────────────────

@router.post("/{deal_id}/move", response_model=DealResponse)
async def move_deal(
    deal_id: int,
    data: DealMove,
    svc: DealService = Depends(get_deal_service),
):
    """
    Move deal to another stage of its pipeline.
    Rules: target must be active, current stage is rejected, conflicts return 409.
    """
    try:
        deal = await svc.get_deal(deal_id)
        return await svc.move_to_stage(deal, data.stage_id, changed_by=data.actor_id, reason=data.reason)
    except EngineError as e:
        raise_engine_error(e, context={"deal_id": deal_id, "stage_id": data.stage_id})


@router.get("/{deal_id}/history", response_model=list[StageHistoryResponse])
async def get_deal_history(
    deal_id: int,
    svc: DealService = Depends(get_deal_service),
):
    """Stage history, oldest first."""
    try:
        deal = await svc.get_deal(deal_id)
    except EngineError as e:
        raise_engine_error(e)
    return deal.stage_history
