"""
Pipeline Repository - Data Access Layer for Pipeline and PipelineStage.
"""
from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.deal import Deal
from app.models.pipeline import Pipeline


class PipelineRepository:
    """Repository for Pipeline CRUD operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, pipeline: Pipeline) -> Pipeline:
        """Create a new pipeline together with its stages."""
        self.db.add(pipeline)
        await self.db.flush()
        await self.db.refresh(pipeline)
        return pipeline

    async def get_by_id(
        self,
        pipeline_id: int,
        organization_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[Pipeline]:
        """Get pipeline by ID, always re-reading stage definitions from the database."""
        stmt = (
            select(Pipeline)
            .where(Pipeline.id == pipeline_id)
            .execution_options(populate_existing=True)
        )
        if organization_id is not None:
            stmt = stmt.where(Pipeline.organization_id == organization_id)
        if not include_deleted:
            stmt = stmt.where(Pipeline.is_deleted == False)

        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_all(self, organization_id: str, include_inactive: bool = False) -> list[Pipeline]:
        """Organization pipelines, default first then newest."""
        stmt = (
            select(Pipeline)
            .where(Pipeline.organization_id == organization_id)
            .where(Pipeline.is_deleted == False)
        )
        if not include_inactive:
            stmt = stmt.where(Pipeline.is_active == True)
        stmt = stmt.order_by(Pipeline.is_default.desc(), Pipeline.created_at.desc(), Pipeline.id.desc())

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_default(self, organization_id: str) -> Optional[Pipeline]:
        stmt = (
            select(Pipeline)
            .where(Pipeline.organization_id == organization_id)
            .where(Pipeline.is_default == True)
            .where(Pipeline.is_deleted == False)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def unset_default(self, organization_id: str, exclude_id: Optional[int] = None) -> int:
        """Clear the default flag on every other pipeline of the organization."""
        stmt = (
            update(Pipeline)
            .where(Pipeline.organization_id == organization_id)
            .where(Pipeline.is_default == True)
            .values(is_default=False, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session="fetch")
        )
        if exclude_id is not None:
            stmt = stmt.where(Pipeline.id != exclude_id)
        result = await self.db.execute(stmt)
        return result.rowcount

    async def count_deals(self, pipeline_id: int, stage_id: Optional[int] = None) -> int:
        """Count non-deleted deals in a pipeline, optionally only those sitting on one stage."""
        stmt = (
            select(func.count())
            .select_from(Deal)
            .where(Deal.pipeline_id == pipeline_id)
            .where(Deal.is_deleted == False)
        )
        if stage_id is not None:
            stmt = stmt.where(Deal.stage_id == stage_id)
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def save(self, pipeline: Pipeline) -> Pipeline:
        """Save pipeline changes."""
        await self.db.flush()
        await self.db.refresh(pipeline)
        return pipeline

    async def delete(self, pipeline: Pipeline, deleted_by: str = "System") -> None:
        """Soft delete a pipeline - never removed while deals reference it."""
        pipeline.is_deleted = True
        pipeline.deleted_at = datetime.now(UTC)
        pipeline.deleted_by = deleted_by
        await self.db.flush()
