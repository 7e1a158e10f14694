"""
PipelineService: owns pipeline and stage definitions.

Read side (used by the deal engine on every call, nothing cached):
- get_pipeline / get_stage / get_stages_ordered
- get_next_active_stage / get_previous_active_stage

Write side (admin-facing), rules enforced here:
- at least PIPELINE_MIN_STAGES active stages, at most PIPELINE_MAX_STAGES stages
- a stage is never both closed-won and closed-lost
- a stage with resident deals cannot be removed
- stage order is renormalized to 0..N-1 after every structural change
- one default pipeline per organization, switched explicitly
"""
from typing import Iterable, Optional

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.models.pipeline import Pipeline, PipelineStage, ordered_stages
from app.repositories.pipeline_repo import PipelineRepository
from app.schemas.pipeline import (
    PipelineCreate,
    PipelineUpdate,
    StageCreate,
    StageOrderItem,
    StageUpdate,
)

logger = get_logger(__name__)


def normalize_stage_order(stages: Iterable[PipelineStage]) -> list[PipelineStage]:
    """Sort stages by current order and rewrite order as a dense 0..N-1 sequence."""
    ordered = sorted(
        stages,
        key=lambda s: (s.order if s.order is not None else 0, s.id is None, s.id or 0),
    )
    for index, stage in enumerate(ordered):
        stage.order = index
    return ordered


def validate_stage_flags(is_closed_won: bool, is_closed_lost: bool) -> None:
    if is_closed_won and is_closed_lost:
        raise ValidationError("A stage cannot be both closed-won and closed-lost")


def next_active_stage(stages: list[PipelineStage], stage_id: int) -> Optional[PipelineStage]:
    """Nearest active stage after `stage_id` in order, or None."""
    ordered = sorted(stages, key=lambda s: s.order)
    for index, stage in enumerate(ordered):
        if stage.id == stage_id:
            return next((s for s in ordered[index + 1:] if s.is_active), None)
    return None


def previous_active_stage(stages: list[PipelineStage], stage_id: int) -> Optional[PipelineStage]:
    """Nearest active stage before `stage_id` in order, or None."""
    ordered = sorted(stages, key=lambda s: s.order)
    for index, stage in enumerate(ordered):
        if stage.id == stage_id:
            return next((s for s in reversed(ordered[:index]) if s.is_active), None)
    return None


def _stage_from_schema(data: StageCreate | dict, order: int) -> PipelineStage:
    if isinstance(data, dict):
        data = StageCreate(**data)
    return PipelineStage(
        name=data.name,
        description=data.description,
        probability=data.probability,
        color=data.color,
        order=order,
        is_active=data.is_active,
        is_closed_won=data.is_closed_won,
        is_closed_lost=data.is_closed_lost,
    )


class PipelineService:
    def __init__(self, pipeline_repo: PipelineRepository):
        self.repo = pipeline_repo

    # ──────────────────────────────────────────────
    # Read contract
    # ──────────────────────────────────────────────

    async def get_pipeline(self, pipeline_id: int, organization_id: Optional[str] = None) -> Pipeline:
        pipeline = await self.repo.get_by_id(pipeline_id, organization_id=organization_id)
        if not pipeline:
            raise NotFoundError("Pipeline")
        return pipeline

    async def get_default_pipeline(self, organization_id: str) -> Pipeline:
        pipeline = await self.repo.get_default(organization_id)
        if not pipeline:
            raise NotFoundError("Default pipeline")
        return pipeline

    async def get_stage(self, pipeline_id: int, stage_id: int) -> PipelineStage:
        pipeline = await self.get_pipeline(pipeline_id)
        for stage in pipeline.stages:
            if stage.id == stage_id:
                return stage
        raise NotFoundError("Stage")

    async def get_stages_ordered(self, pipeline_id: int) -> list[PipelineStage]:
        pipeline = await self.get_pipeline(pipeline_id)
        return ordered_stages(pipeline)

    async def get_next_active_stage(self, pipeline_id: int, stage_id: int) -> Optional[PipelineStage]:
        pipeline = await self.get_pipeline(pipeline_id)
        stage = self._find_stage(pipeline, stage_id)
        return next_active_stage(pipeline.stages, stage.id)

    async def get_previous_active_stage(self, pipeline_id: int, stage_id: int) -> Optional[PipelineStage]:
        pipeline = await self.get_pipeline(pipeline_id)
        stage = self._find_stage(pipeline, stage_id)
        return previous_active_stage(pipeline.stages, stage.id)

    async def list_pipelines(self, organization_id: str, include_inactive: bool = False) -> list[Pipeline]:
        return await self.repo.get_all(organization_id, include_inactive=include_inactive)

    # ──────────────────────────────────────────────
    # Pipeline lifecycle
    # ──────────────────────────────────────────────

    async def create_pipeline(self, organization_id: str, data: PipelineCreate, created_by: str) -> Pipeline:
        stage_defs = data.stages or settings.DEFAULT_PIPELINE_STAGES
        stages = [_stage_from_schema(stage, order) for order, stage in enumerate(stage_defs)]

        for stage in stages:
            validate_stage_flags(stage.is_closed_won, stage.is_closed_lost)
        if len(stages) > settings.PIPELINE_MAX_STAGES:
            raise ValidationError(f"Pipeline cannot have more than {settings.PIPELINE_MAX_STAGES} stages")
        if sum(1 for s in stages if s.is_active) < settings.PIPELINE_MIN_STAGES:
            raise ValidationError(f"Pipeline must have at least {settings.PIPELINE_MIN_STAGES} stages")

        if data.is_default:
            await self.repo.unset_default(organization_id)

        pipeline = Pipeline(
            organization_id=organization_id,
            name=data.name,
            description=data.description,
            is_default=data.is_default,
            require_stage_reason=data.require_stage_reason,
            stuck_days=data.stuck_days,
            created_by=created_by,
            stages=stages,
        )
        pipeline = await self.repo.create(pipeline)
        logger.info(
            "pipeline_created",
            pipeline_id=pipeline.id,
            organization_id=organization_id,
            stages=len(stages),
            created_by=created_by,
        )
        return pipeline

    async def update_pipeline(self, pipeline: Pipeline, data: PipelineUpdate, updated_by: str) -> Pipeline:
        if data.name is not None:
            pipeline.name = data.name
        if data.description is not None:
            pipeline.description = data.description
        if data.is_active is not None:
            pipeline.is_active = data.is_active
        if data.require_stage_reason is not None:
            pipeline.require_stage_reason = data.require_stage_reason
        if data.stuck_days is not None:
            pipeline.stuck_days = data.stuck_days

        if data.is_default and not pipeline.is_default:
            return await self.set_default_pipeline(pipeline, updated_by)
        if data.is_default is False:
            pipeline.is_default = False

        pipeline.updated_by = updated_by
        return await self.repo.save(pipeline)

    async def set_default_pipeline(self, pipeline: Pipeline, updated_by: str) -> Pipeline:
        """Make `pipeline` the organization default, clearing any previous one first."""
        cleared = await self.repo.unset_default(pipeline.organization_id, exclude_id=pipeline.id)
        pipeline.is_default = True
        pipeline.updated_by = updated_by
        pipeline = await self.repo.save(pipeline)
        logger.info(
            "pipeline_default_changed",
            pipeline_id=pipeline.id,
            organization_id=pipeline.organization_id,
            previous_defaults_cleared=cleared,
        )
        return pipeline

    async def delete_pipeline(self, pipeline: Pipeline, deleted_by: str) -> None:
        if await self.repo.count_deals(pipeline.id) > 0:
            raise ConflictError("Cannot delete pipeline with existing deals")
        if pipeline.is_default:
            raise ConflictError("Cannot delete the default pipeline")

        await self.repo.delete(pipeline, deleted_by=deleted_by)
        logger.info("pipeline_deleted", pipeline_id=pipeline.id, deleted_by=deleted_by)

    # ──────────────────────────────────────────────
    # Stage mutations
    # ──────────────────────────────────────────────

    def _find_stage(self, pipeline: Pipeline, stage_id: int) -> PipelineStage:
        for stage in pipeline.stages:
            if stage.id == stage_id:
                return stage
        raise NotFoundError("Stage")

    async def add_stage(self, pipeline: Pipeline, data: StageCreate, updated_by: str) -> Pipeline:
        if len(pipeline.stages) >= settings.PIPELINE_MAX_STAGES:
            raise ValidationError(f"Pipeline cannot have more than {settings.PIPELINE_MAX_STAGES} stages")
        validate_stage_flags(data.is_closed_won, data.is_closed_lost)

        max_order = max((s.order for s in pipeline.stages), default=-1)
        pipeline.stages.append(_stage_from_schema(data, max_order + 1))
        normalize_stage_order(pipeline.stages)

        pipeline.updated_by = updated_by
        pipeline = await self.repo.save(pipeline)
        logger.info("stage_added", pipeline_id=pipeline.id, name=data.name, updated_by=updated_by)
        return pipeline

    async def update_stage(
        self,
        pipeline: Pipeline,
        stage_id: int,
        data: StageUpdate,
        updated_by: str,
    ) -> Pipeline:
        stage = self._find_stage(pipeline, stage_id)

        is_closed_won = stage.is_closed_won if data.is_closed_won is None else data.is_closed_won
        is_closed_lost = stage.is_closed_lost if data.is_closed_lost is None else data.is_closed_lost
        validate_stage_flags(is_closed_won, is_closed_lost)

        if data.is_active is False and stage.is_active:
            remaining = sum(1 for s in pipeline.stages if s.is_active and s.id != stage.id)
            if remaining < settings.PIPELINE_MIN_STAGES:
                raise ValidationError(
                    f"Pipeline must keep at least {settings.PIPELINE_MIN_STAGES} active stages"
                )

        for field in ("name", "description", "probability", "color", "is_active"):
            value = getattr(data, field)
            if value is not None:
                setattr(stage, field, value)
        stage.is_closed_won = is_closed_won
        stage.is_closed_lost = is_closed_lost
        normalize_stage_order(pipeline.stages)

        pipeline.updated_by = updated_by
        pipeline = await self.repo.save(pipeline)
        logger.info("stage_updated", pipeline_id=pipeline.id, stage_id=stage_id, updated_by=updated_by)
        return pipeline

    async def remove_stage(self, pipeline: Pipeline, stage_id: int, updated_by: str) -> Pipeline:
        stage = self._find_stage(pipeline, stage_id)

        remaining = sum(1 for s in pipeline.stages if s.is_active and s.id != stage.id)
        if remaining < settings.PIPELINE_MIN_STAGES:
            raise ValidationError(f"Pipeline must have at least {settings.PIPELINE_MIN_STAGES} stages")

        if await self.repo.count_deals(pipeline.id, stage_id=stage.id) > 0:
            raise ValidationError("Cannot remove stage with existing deals")

        pipeline.stages.remove(stage)
        normalize_stage_order(pipeline.stages)

        pipeline.updated_by = updated_by
        pipeline = await self.repo.save(pipeline)
        logger.info("stage_removed", pipeline_id=pipeline.id, stage_id=stage_id, updated_by=updated_by)
        return pipeline

    async def reorder_stages(
        self,
        pipeline: Pipeline,
        stage_orders: list[StageOrderItem],
        updated_by: str,
    ) -> Pipeline:
        requested: dict[int, int] = {}
        for item in stage_orders:
            self._find_stage(pipeline, item.stage_id)
            requested[item.stage_id] = item.order

        current = ordered_stages(pipeline)
        ranked = sorted(current, key=lambda s: (requested.get(s.id, s.order), s.order))
        for index, stage in enumerate(ranked):
            stage.order = index

        pipeline.updated_by = updated_by
        pipeline = await self.repo.save(pipeline)
        logger.info("stages_reordered", pipeline_id=pipeline.id, updated_by=updated_by)
        return pipeline
