"""
Pipeline analytics - snapshot metrics over the deals currently in a pipeline.

Read-only; may run alongside transitions and observe slightly stale data.
Conversion rate is the ratio of deals resident on the next active stage to
deals resident on this one. Deals that already left the pipeline are not
counted, so this is a funnel health signal, not a cohort conversion.
"""
from collections import defaultdict
from datetime import datetime, timedelta, UTC
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.models.deal import Deal, DealStatus
from app.models.history import DealStageHistory
from app.models.pipeline import ordered_stages
from app.repositories.deal_repo import DealRepository
from app.services.ledger import compute_days_in_stage
from app.services.pipeline_service import PipelineService, next_active_stage

logger = get_logger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000


def is_stuck(deal: Deal, threshold_days: Optional[int] = None, now: Optional[datetime] = None) -> bool:
    """Open deal whose live days-in-stage exceeds the threshold. Writes nothing."""
    if threshold_days is None:
        threshold_days = settings.STUCK_DEAL_DAYS
    if deal.status != DealStatus.OPEN:
        return False
    return compute_days_in_stage(deal.current_stage_entered_at, now) > threshold_days


def is_overdue(deal: Deal, now: Optional[datetime] = None) -> bool:
    """Open deal whose expected close date has passed."""
    if deal.expected_close_date is None or deal.status != DealStatus.OPEN:
        return False
    expected = deal.expected_close_date
    if expected.tzinfo is None:
        expected = expected.replace(tzinfo=UTC)
    return (now or datetime.now(UTC)) > expected


def conversion_rate(current_count: int, next_count: int) -> float:
    if not current_count or not next_count:
        return 0.0
    return round(next_count / current_count * 100, 2)


class PipelineAnalyticsService:
    """Service for per-stage pipeline metrics."""

    def __init__(self, db: AsyncSession, pipeline_service: PipelineService):
        self.db = db
        self.deal_repo = DealRepository(db)
        self.pipelines = pipeline_service

    # ──────────────────────────────────────────────
    # Stage analytics
    # ──────────────────────────────────────────────

    async def stage_analytics(self, pipeline_id: int, now: Optional[datetime] = None) -> dict:
        """
        Per-stage deal count, total/avg value, avg live days in stage and
        conversion rate to the next active stage, in stage order.
        """
        pipeline = await self.pipelines.get_pipeline(pipeline_id)
        deals = await self.deal_repo.get_by_pipeline(pipeline.id)
        now = now or datetime.now(UTC)

        counts: dict[int, int] = defaultdict(int)
        values: dict[int, float] = defaultdict(float)
        days: dict[int, int] = defaultdict(int)
        for deal in deals:
            counts[deal.stage_id] += 1
            values[deal.stage_id] += deal.value or 0.0
            days[deal.stage_id] += compute_days_in_stage(deal.current_stage_entered_at, now)

        stages = ordered_stages(pipeline)
        rows = []
        for stage in stages:
            count = counts.get(stage.id, 0)
            following = next_active_stage(stages, stage.id)
            next_count = counts.get(following.id, 0) if following else 0
            rows.append({
                "stage_id": stage.id,
                "stage_name": stage.name,
                "deal_count": count,
                "total_value": round(values.get(stage.id, 0.0), 2),
                "avg_value": round(values[stage.id] / count, 2) if count else 0.0,
                "avg_days_in_stage": round(days[stage.id] / count, 2) if count else 0.0,
                "conversion_rate": conversion_rate(count, next_count),
            })

        logger.debug("stage_analytics_computed", pipeline_id=pipeline.id, deals=len(deals))
        return {
            "pipeline_id": pipeline.id,
            "pipeline_name": pipeline.name,
            "analytics": rows,
        }

    async def get_stuck_deals(
        self,
        pipeline_id: int,
        threshold_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[dict]:
        """Open deals sitting longer than the threshold (pipeline setting by default)."""
        pipeline = await self.pipelines.get_pipeline(pipeline_id)
        if threshold_days is None:
            threshold_days = pipeline.stuck_days
        now = now or datetime.now(UTC)

        stuck = []
        for deal in await self.deal_repo.get_by_pipeline(pipeline.id):
            if is_stuck(deal, threshold_days, now):
                stuck.append({
                    "deal_id": deal.id,
                    "title": deal.title,
                    "stage_id": deal.stage_id,
                    "days_in_stage": compute_days_in_stage(deal.current_stage_entered_at, now),
                    "value": deal.value,
                    "is_overdue": is_overdue(deal, now),
                })
        stuck.sort(key=lambda row: row["days_in_stage"], reverse=True)
        return stuck

    # ──────────────────────────────────────────────
    # Board (kanban) view
    # ──────────────────────────────────────────────

    async def deals_by_stage(self, pipeline_id: int, organization_id: Optional[str] = None) -> dict:
        """Deals grouped under each stage of the pipeline, in stage order."""
        pipeline = await self.pipelines.get_pipeline(pipeline_id, organization_id=organization_id)
        deals = await self.deal_repo.get_by_pipeline(pipeline.id)

        by_stage: dict[int, list[Deal]] = defaultdict(list)
        for deal in deals:
            by_stage[deal.stage_id].append(deal)

        columns = []
        for stage in ordered_stages(pipeline):
            stage_deals = by_stage.get(stage.id, [])
            columns.append({
                "stage": stage,
                "deals": stage_deals,
                "deal_count": len(stage_deals),
                "total_value": round(sum(d.value or 0.0 for d in stage_deals), 2),
            })

        return {
            "pipeline_id": pipeline.id,
            "pipeline_name": pipeline.name,
            "stages": columns,
        }

    # ──────────────────────────────────────────────
    # Win/loss summary
    # ──────────────────────────────────────────────

    async def deal_summary(
        self,
        organization_id: str,
        period_days: int = 30,
        pipeline_id: Optional[int] = None,
    ) -> dict:
        """Totals and win rate for deals created in the last `period_days` days."""
        since = datetime.now(UTC) - timedelta(days=period_days)
        deals = await self.deal_repo.get_created_since(organization_id, since, pipeline_id=pipeline_id)

        total = len(deals)
        if total == 0:
            return {"period_days": period_days}

        total_value = sum(d.value or 0.0 for d in deals)
        won = [d for d in deals if d.status == DealStatus.WON]
        lost = [d for d in deals if d.status == DealStatus.LOST]

        return {
            "period_days": period_days,
            "total_deals": total,
            "total_value": round(total_value, 2),
            "avg_value": round(total_value / total, 2),
            "won_deals": len(won),
            "lost_deals": len(lost),
            "won_value": round(sum(d.value or 0.0 for d in won), 2),
            "win_rate": round(len(won) / total * 100, 2),
        }

    # ──────────────────────────────────────────────
    # Historical dwell time (from the ledger)
    # ──────────────────────────────────────────────

    async def stage_dwell_history(self, pipeline_id: int) -> list[dict]:
        """Average duration of completed stage visits, per stage of the pipeline."""
        pipeline = await self.pipelines.get_pipeline(pipeline_id)

        stmt = (
            select(DealStageHistory.stage_id, DealStageHistory.duration)
            .join(Deal, Deal.id == DealStageHistory.deal_id)
            .where(Deal.pipeline_id == pipeline.id)
            .where(Deal.is_deleted == False)
            .where(DealStageHistory.exited_at.isnot(None))
        )
        result = await self.db.execute(stmt)

        durations: dict[int, list[int]] = defaultdict(list)
        for stage_id, duration in result.all():
            if duration is not None:
                durations[stage_id].append(duration)

        rows = []
        for stage in ordered_stages(pipeline):
            visits = durations.get(stage.id, [])
            avg_days = sum(visits) / len(visits) / MS_PER_DAY if visits else 0.0
            rows.append({
                "stage_id": stage.id,
                "stage_name": stage.name,
                "completed_visits": len(visits),
                "avg_duration_days": round(avg_days, 2),
            })
        return rows
