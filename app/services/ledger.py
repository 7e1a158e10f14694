"""
Stage history ledger - per-deal log of stage occupancies.

Entries are appended on every transition; the only in-place change ever
made to an existing entry is closing it (exited_at + duration) or
backfilling a stage name that was recorded empty.
"""
import math
from datetime import datetime, UTC, timedelta
from typing import Optional

from app.core.config import settings
from app.core.logging import get_logger
from app.models.deal import Deal
from app.models.history import DealStageHistory
from app.models.pipeline import PipelineStage
from app.repositories.pipeline_repo import PipelineRepository

logger = get_logger(__name__)

ONE_DAY = timedelta(days=1)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def duration_ms(entered_at: datetime, exited_at: datetime) -> int:
    delta = as_utc(exited_at) - as_utc(entered_at)
    return int(delta / timedelta(milliseconds=1))


def compute_days_in_stage(entered_at: datetime, now: Optional[datetime] = None) -> int:
    """Whole days (rounded up) since `entered_at`. Always computed fresh."""
    now = now or datetime.now(UTC)
    delta = abs(as_utc(now) - as_utc(entered_at))
    return math.ceil(delta / ONE_DAY)


def display_stage_name(stage_name: str | None) -> str:
    """Label to show for a history entry that may predate name capture."""
    if stage_name and stage_name.strip():
        return stage_name
    return settings.UNKNOWN_STAGE_NAME


def open_entries(deal: Deal) -> list[DealStageHistory]:
    return [entry for entry in deal.stage_history if entry.is_open]


def close_entry(entry: DealStageHistory, now: datetime) -> None:
    entry.exited_at = now
    entry.duration = duration_ms(entry.entered_at, now)


class StageHistoryLedger:
    """Writes and repairs a deal's stage history."""

    def __init__(self, pipeline_repo: PipelineRepository):
        self.pipeline_repo = pipeline_repo

    async def resolve_stage_name(self, pipeline_id: int, stage_id: int) -> str:
        """
        Look up the current name of a stage.
        Never raises: any lookup failure yields the fallback label.

        The query runs in its own SAVEPOINT. A failed statement would
        otherwise leave a PostgreSQL transaction aborted, and the write
        that asked for the name could not finish.
        """
        try:
            async with self.pipeline_repo.db.begin_nested():
                pipeline = await self.pipeline_repo.get_by_id(pipeline_id, include_deleted=True)
        except Exception as e:
            logger.warning(
                "stage_name_lookup_failed",
                pipeline_id=pipeline_id,
                stage_id=stage_id,
                error=str(e),
            )
            return settings.UNKNOWN_STAGE_NAME

        if pipeline is None:
            logger.warning("stage_name_fallback", pipeline_id=pipeline_id, stage_id=stage_id, cause="pipeline")
            return settings.UNKNOWN_STAGE_NAME

        for stage in pipeline.stages:
            if stage.id == stage_id:
                return stage.name or settings.UNKNOWN_STAGE_NAME

        logger.warning("stage_name_fallback", pipeline_id=pipeline_id, stage_id=stage_id, cause="stage")
        return settings.UNKNOWN_STAGE_NAME

    async def seed_initial_entry(self, deal: Deal, changed_by: str) -> DealStageHistory | None:
        """Open the first history entry of a new deal. No-op when history exists."""
        if deal.stage_history:
            return None

        entry = DealStageHistory(
            stage_id=deal.stage_id,
            stage_name=await self.resolve_stage_name(deal.pipeline_id, deal.stage_id),
            entered_at=deal.current_stage_entered_at,
            changed_by=changed_by,
        )
        deal.stage_history.append(entry)
        return entry

    def append_transition(
        self,
        deal: Deal,
        stage: PipelineStage,
        changed_by: str,
        reason: str | None,
        now: datetime,
    ) -> DealStageHistory:
        """Close whatever is open and open a new entry for `stage`."""
        for entry in open_entries(deal):
            close_entry(entry, now)

        entry = DealStageHistory(
            stage_id=stage.id,
            stage_name=stage.name,
            entered_at=now,
            reason=reason,
            changed_by=changed_by,
        )
        deal.stage_history.append(entry)
        return entry

    async def repair_denormalized_names(self, deal: Deal) -> int:
        """
        Backfill entries whose stage name was recorded empty.
        Returns the number of repaired entries; a second run returns 0.
        """
        missing = [entry for entry in deal.stage_history if not (entry.stage_name or "").strip()]
        if not missing:
            return 0

        resolved: dict[int, str] = {}
        for entry in missing:
            if entry.stage_id not in resolved:
                resolved[entry.stage_id] = await self.resolve_stage_name(deal.pipeline_id, entry.stage_id)
            entry.stage_name = resolved[entry.stage_id]

        logger.info("stage_names_repaired", deal_id=deal.id, repaired=len(missing))
        return len(missing)
