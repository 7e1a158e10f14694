"""
Deal status derivation from the flags of the stage a deal lands on.
"""
from dataclasses import dataclass
from datetime import datetime

from app.models.deal import DealStatus
from app.models.pipeline import PipelineStage


@dataclass(frozen=True)
class StatusDerivation:
    status: DealStatus
    probability: int
    actual_close_date: datetime | None


def derive_deal_status(
    current_status: DealStatus,
    stage: PipelineStage,
    now: datetime,
    probability_override: int | None = None,
) -> StatusDerivation:
    """
    Decide status, probability and close date for a deal entering `stage`.

    Terminal stages always use the stage's configured probability. On a
    non-terminal stage an explicit override wins over the stage value, and
    the close date is cleared so a closed deal can be reopened.
    `current_status` does not change the outcome; every landing is
    re-derived from the stage alone.
    """
    if stage.is_closed_won:
        return StatusDerivation(DealStatus.WON, stage.probability, now)
    if stage.is_closed_lost:
        return StatusDerivation(DealStatus.LOST, stage.probability, now)

    probability = stage.probability if probability_override is None else probability_override
    return StatusDerivation(DealStatus.OPEN, probability, None)


def apply_status(deal, derivation: StatusDerivation) -> None:
    """Copy a derivation onto a deal."""
    deal.status = derivation.status
    deal.probability = derivation.probability
    deal.actual_close_date = derivation.actual_close_date
