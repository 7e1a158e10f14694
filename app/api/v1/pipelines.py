"""
Pipeline API endpoints: definitions, stage editing and analytics.
"""
from fastapi import APIRouter, Depends, Query
from starlette import status

from app.api.errors import raise_engine_error
from app.core.deps import get_analytics_service, get_pipeline_service
from app.core.exceptions import EngineError
from app.schemas.deal import PipelineBoardResponse, StuckDealResponse
from app.schemas.pipeline import (
    PipelineAnalyticsResponse,
    PipelineCreate,
    PipelineResponse,
    PipelineUpdate,
    StageCreate,
    StageDwellHistory,
    StageReorder,
    StageUpdate,
)
from app.services.analytics_service import PipelineAnalyticsService
from app.services.pipeline_service import PipelineService


router = APIRouter()


# ──────────────────────────────────────────────
# CRUD
# ──────────────────────────────────────────────

@router.get("", response_model=list[PipelineResponse])
async def list_pipelines(
    organization_id: str = Query(..., min_length=1),
    include_inactive: bool = Query(default=False),
    svc: PipelineService = Depends(get_pipeline_service),
):
    """List organization pipelines, default first."""
    return await svc.list_pipelines(organization_id, include_inactive=include_inactive)


@router.post("", response_model=PipelineResponse, status_code=status.HTTP_201_CREATED)
async def create_pipeline(
    data: PipelineCreate,
    organization_id: str = Query(..., min_length=1),
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    """Create a pipeline. Without stages the default stage set is used."""
    try:
        return await svc.create_pipeline(organization_id, data, created_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.get("/{pipeline_id}", response_model=PipelineResponse)
async def get_pipeline(
    pipeline_id: int,
    organization_id: str | None = Query(default=None),
    svc: PipelineService = Depends(get_pipeline_service),
):
    try:
        return await svc.get_pipeline(pipeline_id, organization_id=organization_id)
    except EngineError as e:
        raise_engine_error(e)


@router.patch("/{pipeline_id}", response_model=PipelineResponse)
async def update_pipeline(
    pipeline_id: int,
    data: PipelineUpdate,
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    try:
        pipeline = await svc.get_pipeline(pipeline_id)
        return await svc.update_pipeline(pipeline, data, updated_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.post("/{pipeline_id}/default", response_model=PipelineResponse)
async def set_default_pipeline(
    pipeline_id: int,
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    """Make this pipeline the organization default."""
    try:
        pipeline = await svc.get_pipeline(pipeline_id)
        return await svc.set_default_pipeline(pipeline, updated_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.delete("/{pipeline_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pipeline(
    pipeline_id: int,
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    """Soft delete a pipeline without deals."""
    try:
        pipeline = await svc.get_pipeline(pipeline_id)
        await svc.delete_pipeline(pipeline, deleted_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


# ──────────────────────────────────────────────
# Stage management
# ──────────────────────────────────────────────

@router.post("/{pipeline_id}/stages", response_model=PipelineResponse)
async def add_stage(
    pipeline_id: int,
    data: StageCreate,
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    try:
        pipeline = await svc.get_pipeline(pipeline_id)
        return await svc.add_stage(pipeline, data, updated_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.put("/{pipeline_id}/stages/order", response_model=PipelineResponse)
async def reorder_stages(
    pipeline_id: int,
    data: StageReorder,
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    try:
        pipeline = await svc.get_pipeline(pipeline_id)
        return await svc.reorder_stages(pipeline, data.stage_orders, updated_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.patch("/{pipeline_id}/stages/{stage_id}", response_model=PipelineResponse)
async def update_stage(
    pipeline_id: int,
    stage_id: int,
    data: StageUpdate,
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    try:
        pipeline = await svc.get_pipeline(pipeline_id)
        return await svc.update_stage(pipeline, stage_id, data, updated_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


@router.delete("/{pipeline_id}/stages/{stage_id}", response_model=PipelineResponse)
async def remove_stage(
    pipeline_id: int,
    stage_id: int,
    actor_id: str = Query(..., min_length=1),
    svc: PipelineService = Depends(get_pipeline_service),
):
    """Remove a stage. Rejected while deals sit on it."""
    try:
        pipeline = await svc.get_pipeline(pipeline_id)
        return await svc.remove_stage(pipeline, stage_id, updated_by=actor_id)
    except EngineError as e:
        raise_engine_error(e)


# ──────────────────────────────────────────────
# Analytics
# ──────────────────────────────────────────────

@router.get("/{pipeline_id}/analytics", response_model=PipelineAnalyticsResponse)
async def get_pipeline_analytics(
    pipeline_id: int,
    analytics: PipelineAnalyticsService = Depends(get_analytics_service),
):
    """Per-stage deal count, value, dwell time and conversion rate."""
    try:
        return await analytics.stage_analytics(pipeline_id)
    except EngineError as e:
        raise_engine_error(e)


@router.get("/{pipeline_id}/dwell-history", response_model=list[StageDwellHistory])
async def get_stage_dwell_history(
    pipeline_id: int,
    analytics: PipelineAnalyticsService = Depends(get_analytics_service),
):
    try:
        return await analytics.stage_dwell_history(pipeline_id)
    except EngineError as e:
        raise_engine_error(e)


@router.get("/{pipeline_id}/board", response_model=PipelineBoardResponse)
async def get_pipeline_board(
    pipeline_id: int,
    organization_id: str | None = Query(default=None),
    analytics: PipelineAnalyticsService = Depends(get_analytics_service),
):
    """Deals grouped by stage (kanban view)."""
    try:
        return await analytics.deals_by_stage(pipeline_id, organization_id=organization_id)
    except EngineError as e:
        raise_engine_error(e)


@router.get("/{pipeline_id}/stuck", response_model=list[StuckDealResponse])
async def get_stuck_deals(
    pipeline_id: int,
    threshold_days: int | None = Query(default=None, ge=0),
    analytics: PipelineAnalyticsService = Depends(get_analytics_service),
):
    """Open deals that stayed on their stage longer than the threshold."""
    try:
        return await analytics.get_stuck_deals(pipeline_id, threshold_days=threshold_days)
    except EngineError as e:
        raise_engine_error(e)
