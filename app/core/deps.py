"""
FastAPI dependencies for dependency injection.
"""
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.repositories.deal_repo import DealRepository
from app.repositories.pipeline_repo import PipelineRepository
from app.services.analytics_service import PipelineAnalyticsService
from app.services.deal_service import DealService
from app.services.ledger import StageHistoryLedger
from app.services.pipeline_service import PipelineService


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_pipeline_repo(db: DbSession) -> PipelineRepository:
    """Get PipelineRepository instance."""
    return PipelineRepository(db)


async def get_deal_repo(db: DbSession) -> DealRepository:
    """Get DealRepository instance."""
    return DealRepository(db)


async def get_pipeline_service(
    pipeline_repo: Annotated[PipelineRepository, Depends(get_pipeline_repo)]
) -> PipelineService:
    """Get PipelineService instance."""
    return PipelineService(pipeline_repo)


async def get_deal_service(
    deal_repo: Annotated[DealRepository, Depends(get_deal_repo)],
    pipeline_repo: Annotated[PipelineRepository, Depends(get_pipeline_repo)],
    pipeline_service: Annotated[PipelineService, Depends(get_pipeline_service)],
) -> DealService:
    """Get DealService instance."""
    return DealService(deal_repo, pipeline_service, StageHistoryLedger(pipeline_repo))


async def get_analytics_service(
    db: DbSession,
    pipeline_service: Annotated[PipelineService, Depends(get_pipeline_service)],
) -> PipelineAnalyticsService:
    """Get PipelineAnalyticsService instance."""
    return PipelineAnalyticsService(db, pipeline_service)
