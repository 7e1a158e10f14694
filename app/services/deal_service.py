"""
DealService: owns the deal lifecycle and stage transitions.

Rules enforced here (NOT in the API layer):
- a deal can only move to an active stage of its own pipeline
- moving to the current stage is an error, not a no-op
- every move closes the open history entry and opens a new one
- status / probability / close date are re-derived from the landing stage
- preconditions are checked before the deal is touched
- a soft-deleted deal is frozen
- a move is written as one unit, conditional on the deal version;
  a lost race is retried once, then reported as ConflictError
"""
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.exceptions import NotFoundError, ValidationError, ConflictError
from app.core.logging import get_logger
from app.models.deal import Deal, DealStatus
from app.models.pipeline import PipelineStage, ordered_stages
from app.repositories.deal_repo import DealRepository
from app.schemas.deal import DealCreate, DealUpdate
from app.services.ledger import StageHistoryLedger, compute_days_in_stage
from app.services.pipeline_service import PipelineService
from app.services.status_deriver import apply_status, derive_deal_status

logger = get_logger(__name__)

DealPrecheck = Callable[[Deal], Awaitable[Any]]
DealMutation = Callable[[Deal, Any], None]


class DealService:
    def __init__(
        self,
        deal_repo: DealRepository,
        pipeline_service: PipelineService,
        ledger: StageHistoryLedger,
    ):
        self.repo = deal_repo
        self.pipelines = pipeline_service
        self.ledger = ledger

    # ──────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────

    async def get_deal(self, deal_id: int, organization_id: Optional[str] = None) -> Deal:
        deal = await self.repo.get_by_id(deal_id, organization_id=organization_id)
        if not deal:
            raise NotFoundError("Deal")
        return deal

    async def get_deals(
        self,
        organization_id: str,
        pipeline_id: int | None = None,
        stage_id: int | None = None,
        status: DealStatus | None = None,
        assigned_to: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[Deal], int]:
        return await self.repo.get_all(
            organization_id,
            pipeline_id=pipeline_id,
            stage_id=stage_id,
            status=status,
            assigned_to=assigned_to,
            offset=offset,
            limit=limit,
        )

    # ──────────────────────────────────────────────
    # Creation
    # ──────────────────────────────────────────────

    async def create_deal(self, organization_id: str, data: DealCreate, created_by: str) -> Deal:
        """
        Create a deal on its initial stage.

        Without pipeline_id the organization's default pipeline is used;
        without stage_id the first active stage of that pipeline.
        """
        if data.pipeline_id is not None:
            pipeline = await self.pipelines.get_pipeline(data.pipeline_id, organization_id=organization_id)
        else:
            pipeline = await self.pipelines.get_default_pipeline(organization_id)

        if data.stage_id is not None:
            stage = next((s for s in pipeline.stages if s.id == data.stage_id), None)
            if stage is None:
                raise NotFoundError("Stage")
        else:
            stage = next((s for s in ordered_stages(pipeline) if s.is_active), None)
            if stage is None:
                raise ValidationError("Pipeline has no active stage")
        if not stage.is_active:
            raise ValidationError("Cannot create deal in inactive stage")

        now = datetime.now(UTC)
        deal = Deal(
            organization_id=organization_id,
            title=data.title,
            description=data.description,
            value=data.value,
            currency=data.currency,
            priority=data.priority,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            current_stage_entered_at=now,
            expected_close_date=data.expected_close_date,
            assigned_to=data.assigned_to,
            created_by=created_by,
        )
        # A deal created directly into a terminal stage is closed right away
        apply_status(deal, derive_deal_status(DealStatus.OPEN, stage, now, data.probability))
        await self.ledger.seed_initial_entry(deal, changed_by=created_by)
        deal.days_in_current_stage = compute_days_in_stage(deal.current_stage_entered_at, now)

        deal = await self.repo.create(deal)
        logger.info(
            "deal_created",
            deal_id=deal.id,
            pipeline_id=deal.pipeline_id,
            stage_id=deal.stage_id,
            status=deal.status.value,
            created_by=created_by,
        )
        return deal

    # ──────────────────────────────────────────────
    # Transitions
    # ──────────────────────────────────────────────

    async def _resolve_target(self, deal: Deal, target_stage_id: int, reason: str | None) -> PipelineStage:
        """All move preconditions. Runs before anything on the deal is touched."""
        pipeline = await self.pipelines.get_pipeline(deal.pipeline_id)
        stage = next((s for s in pipeline.stages if s.id == target_stage_id), None)
        if stage is None:
            raise NotFoundError("Stage")
        if deal.stage_id == target_stage_id:
            raise ValidationError("Deal is already in this stage")
        if not stage.is_active:
            raise ValidationError("Cannot move deal to inactive stage")
        if pipeline.require_stage_reason and not (reason and reason.strip()):
            raise ValidationError("A reason is required to change stage in this pipeline")
        return stage

    def _apply_transition(
        self,
        deal: Deal,
        stage: PipelineStage,
        changed_by: str,
        reason: str | None,
        now: datetime,
        probability_override: int | None = None,
    ) -> None:
        self.ledger.append_transition(deal, stage, changed_by=changed_by, reason=reason, now=now)
        deal.stage_id = stage.id
        deal.current_stage_entered_at = now
        deal.days_in_current_stage = 0
        apply_status(deal, derive_deal_status(deal.status, stage, now, probability_override))
        deal.updated_by = changed_by

    async def move_to_stage(
        self,
        deal: Deal,
        target_stage_id: int,
        changed_by: str,
        reason: str | None = None,
    ) -> Deal:
        """Move a deal to another stage of its pipeline."""
        from_stage_id = deal.stage_id

        async def prepare(current: Deal) -> PipelineStage:
            return await self._resolve_target(current, target_stage_id, reason)

        def apply(current: Deal, stage: PipelineStage) -> None:
            self._apply_transition(current, stage, changed_by, reason, datetime.now(UTC))

        deal = await self._write_with_retry(deal, prepare, apply)
        logger.info(
            "deal_moved",
            deal_id=deal.id,
            from_stage_id=from_stage_id,
            to_stage_id=deal.stage_id,
            status=deal.status.value,
            changed_by=changed_by,
        )
        return deal

    async def update_deal(self, deal: Deal, data: DealUpdate, updated_by: str) -> Deal:
        """Update deal details; a different stage_id moves the deal in the same write."""

        async def prepare(current: Deal) -> Optional[PipelineStage]:
            if data.stage_id is not None and data.stage_id != current.stage_id:
                return await self._resolve_target(current, data.stage_id, data.stage_change_reason)
            return None

        def apply(current: Deal, stage: Optional[PipelineStage]) -> None:
            for field in (
                "title",
                "description",
                "value",
                "currency",
                "priority",
                "expected_close_date",
                "assigned_to",
                "won_reason",
                "lost_reason",
            ):
                value = getattr(data, field)
                if value is not None:
                    setattr(current, field, value)

            if stage is not None:
                self._apply_transition(
                    current,
                    stage,
                    updated_by,
                    data.stage_change_reason,
                    datetime.now(UTC),
                    probability_override=data.probability,
                )
            elif data.probability is not None:
                current.probability = data.probability
            current.updated_by = updated_by

        return await self._write_with_retry(deal, prepare, apply)

    async def delete_deal(self, deal: Deal, deleted_by: str) -> None:
        """Soft delete; the stage history stays as it was."""
        await self.repo.delete(deal, deleted_by=deleted_by)
        logger.info("deal_deleted", deal_id=deal.id, deleted_by=deleted_by)

    # ──────────────────────────────────────────────
    # Write path
    # ──────────────────────────────────────────────

    async def _write_with_retry(self, deal: Deal, prepare: DealPrecheck, apply: DealMutation) -> Deal:
        """
        Check preconditions, then apply and flush inside a SAVEPOINT.

        `prepare` only reads; it runs before the deal is touched, so a
        rejected write leaves the caller's deal as it was. The deal row
        update is conditional on version_id; if another writer got there
        first the savepoint is rolled back, the deal re-read and both
        steps run again.
        """
        if deal.is_deleted:
            raise NotFoundError("Deal")

        deal_id = deal.id
        attempts = settings.TRANSITION_CONFLICT_RETRIES + 1

        for attempt in range(attempts):
            if attempt:
                deal = await self.get_deal(deal_id)
            checked = await prepare(deal)
            try:
                async with self.repo.db.begin_nested():
                    await self.ledger.repair_denormalized_names(deal)
                    # Snapshot refresh first; a transition resets it to 0
                    deal.days_in_current_stage = compute_days_in_stage(deal.current_stage_entered_at)
                    apply(deal, checked)
                    await self.repo.db.flush()
            except StaleDataError:
                logger.warning("deal_write_conflict", deal_id=deal_id, attempt=attempt + 1)
                continue
            return await self.repo.save(deal)

        # Reload so the caller's deal reflects the committed state, not our rolled-back one
        await self.repo.get_by_id(deal_id, include_deleted=True)
        raise ConflictError(f"Deal {deal_id} was modified concurrently, please retry")
