"""
Deal Repository - Data Access Layer for Deal model.
"""
from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.deal import Deal, DealStatus


class DealRepository:
    """Repository for Deal CRUD operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, deal: Deal) -> Deal:
        """Create a new deal (history entries cascade with it)."""
        self.db.add(deal)
        await self.db.flush()
        await self.db.refresh(deal)
        return deal

    async def get_by_id(
        self,
        deal_id: int,
        organization_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[Deal]:
        """Get deal by ID. Re-reads the row so a retry sees the latest version."""
        stmt = (
            select(Deal)
            .where(Deal.id == deal_id)
            .execution_options(populate_existing=True)
        )
        if organization_id is not None:
            stmt = stmt.where(Deal.organization_id == organization_id)

        # Soft delete filter - by default don't return deleted deals
        if not include_deleted:
            stmt = stmt.where(Deal.is_deleted == False)

        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_all(
        self,
        organization_id: str,
        pipeline_id: Optional[int] = None,
        stage_id: Optional[int] = None,
        status: Optional[DealStatus] = None,
        assigned_to: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[Deal], int]:
        """Get deals with optional filtering and pagination."""
        stmt = (
            select(Deal)
            .where(Deal.organization_id == organization_id)
            .where(Deal.is_deleted == False)
        )
        if pipeline_id is not None:
            stmt = stmt.where(Deal.pipeline_id == pipeline_id)
        if stage_id is not None:
            stmt = stmt.where(Deal.stage_id == stage_id)
        if status:
            stmt = stmt.where(Deal.status == status)
        if assigned_to:
            stmt = stmt.where(Deal.assigned_to == assigned_to)

        # Total count
        count_stmt = select(func.count()).select_from(stmt.subquery())
        count_result = await self.db.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = stmt.offset(offset).limit(limit).order_by(Deal.created_at.desc(), Deal.id.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def get_by_pipeline(self, pipeline_id: int) -> list[Deal]:
        """All non-deleted deals of a pipeline, newest first."""
        stmt = (
            select(Deal)
            .where(Deal.pipeline_id == pipeline_id)
            .where(Deal.is_deleted == False)
            .order_by(Deal.created_at.desc(), Deal.id.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_created_since(
        self,
        organization_id: str,
        since: datetime,
        pipeline_id: Optional[int] = None,
    ) -> list[Deal]:
        stmt = (
            select(Deal)
            .where(Deal.organization_id == organization_id)
            .where(Deal.is_deleted == False)
            .where(Deal.created_at >= since)
        )
        if pipeline_id is not None:
            stmt = stmt.where(Deal.pipeline_id == pipeline_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def save(self, deal: Deal) -> Deal:
        """Save deal changes."""
        await self.db.flush()
        await self.db.refresh(deal)
        return deal

    async def delete(self, deal: Deal, deleted_by: str = "System") -> None:
        """Soft delete a deal - history is frozen, not removed."""
        deal.is_deleted = True
        deal.deleted_at = datetime.now(UTC)
        deal.deleted_by = deleted_by
        await self.db.flush()
