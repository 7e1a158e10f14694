"""
Unit tests for deal status derivation from stage flags.
"""
from datetime import datetime, UTC
from types import SimpleNamespace

from app.models.deal import DealStatus
from app.models.pipeline import PipelineStage
from app.services.status_deriver import StatusDerivation, apply_status, derive_deal_status

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def make_stage(probability=25, won=False, lost=False) -> PipelineStage:
    return PipelineStage(
        name="Stage",
        probability=probability,
        color="#000000",
        order=0,
        is_active=True,
        is_closed_won=won,
        is_closed_lost=lost,
    )


class TestDeriveDealStatus:

    def test_closed_won_stage_wins_deal(self):
        result = derive_deal_status(DealStatus.OPEN, make_stage(100, won=True), NOW)
        assert result == StatusDerivation(DealStatus.WON, 100, NOW)

    def test_closed_lost_stage_loses_deal(self):
        result = derive_deal_status(DealStatus.OPEN, make_stage(0, lost=True), NOW)
        assert result == StatusDerivation(DealStatus.LOST, 0, NOW)

    def test_open_stage_uses_stage_probability(self):
        result = derive_deal_status(DealStatus.OPEN, make_stage(25), NOW)
        assert result.status == DealStatus.OPEN
        assert result.probability == 25
        assert result.actual_close_date is None

    def test_reopening_a_won_deal_clears_close_date(self):
        result = derive_deal_status(DealStatus.WON, make_stage(50), NOW)
        assert result.status == DealStatus.OPEN
        assert result.actual_close_date is None

    def test_pending_deal_is_reopened_on_open_stage(self):
        result = derive_deal_status(DealStatus.PENDING, make_stage(50), NOW)
        assert result.status == DealStatus.OPEN

    def test_probability_override_applies_on_open_stage(self):
        result = derive_deal_status(DealStatus.OPEN, make_stage(25), NOW, probability_override=40)
        assert result.probability == 40

    def test_probability_override_ignored_on_terminal_stage(self):
        """Terminal stages always carry their configured probability."""
        result = derive_deal_status(DealStatus.OPEN, make_stage(100, won=True), NOW, probability_override=40)
        assert result.probability == 100

    def test_derivation_is_deterministic(self):
        stage = make_stage(75)
        assert derive_deal_status(DealStatus.OPEN, stage, NOW) == derive_deal_status(DealStatus.OPEN, stage, NOW)


def test_apply_status_copies_all_fields():
    deal = SimpleNamespace(status=DealStatus.OPEN, probability=10, actual_close_date=None)
    apply_status(deal, StatusDerivation(DealStatus.LOST, 0, NOW))
    assert deal.status == DealStatus.LOST
    assert deal.probability == 0
    assert deal.actual_close_date == NOW
