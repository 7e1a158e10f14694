"""
Stage analytics, stuck deals, board view and win/loss summary.
"""
from datetime import datetime, timedelta, UTC

import pytest

from app.core.exceptions import NotFoundError
from app.schemas.deal import DealCreate
from app.schemas.pipeline import StageUpdate

ORG_ID = "org-1"
ACTOR_ID = "user-1"


def stage_of(pipeline, name):
    return next(s for s in pipeline.stages if s.name == name)


async def seed_deals(deal_service, pipeline, layout: dict[str, list[float]]):
    """layout: stage name -> deal values created directly on that stage."""
    deals = []
    for name, values in layout.items():
        for value in values:
            deals.append(await deal_service.create_deal(
                ORG_ID,
                DealCreate(title=f"{name} {value}", value=value, pipeline_id=pipeline.id,
                           stage_id=stage_of(pipeline, name).id),
                ACTOR_ID,
            ))
    return deals


class TestStageAnalytics:

    async def test_counts_values_and_conversion(self, analytics_service, deal_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [100.0, 300.0], "Qualified": [500.0]})

        result = await analytics_service.stage_analytics(pipeline.id)
        rows = {row["stage_name"]: row for row in result["analytics"]}

        assert [row["stage_name"] for row in result["analytics"]] == ["Lead", "Qualified", "Closed Won", "Closed Lost"]
        assert rows["Lead"]["deal_count"] == 2
        assert rows["Lead"]["total_value"] == 400.0
        assert rows["Lead"]["avg_value"] == 200.0
        assert rows["Lead"]["conversion_rate"] == 50.0
        # Next active stage (Closed Won) is empty
        assert rows["Qualified"]["conversion_rate"] == 0.0
        assert rows["Closed Won"]["deal_count"] == 0
        assert rows["Closed Won"]["avg_value"] == 0.0

    async def test_empty_pipeline_never_divides_by_zero(self, analytics_service, pipeline):
        result = await analytics_service.stage_analytics(pipeline.id)
        assert all(row["conversion_rate"] == 0.0 for row in result["analytics"])
        assert result["pipeline_name"] == "Sales"

    async def test_conversion_skips_inactive_stage(self, analytics_service, deal_service, pipeline_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [1.0, 1.0, 1.0, 1.0], "Closed Won": [1.0]})
        qualified = stage_of(pipeline, "Qualified")
        await pipeline_service.update_stage(pipeline, qualified.id, StageUpdate(is_active=False), ACTOR_ID)

        result = await analytics_service.stage_analytics(pipeline.id)
        rows = {row["stage_name"]: row for row in result["analytics"]}
        assert rows["Lead"]["conversion_rate"] == 25.0

    async def test_dwell_days_use_live_clock(self, analytics_service, deal_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [10.0]})

        later = datetime.now(UTC) + timedelta(days=3)
        result = await analytics_service.stage_analytics(pipeline.id, now=later)
        assert result["analytics"][0]["avg_days_in_stage"] == 4.0

    async def test_deleted_deals_are_excluded(self, analytics_service, deal_service, pipeline):
        deal, _ = await seed_deals(deal_service, pipeline, {"Lead": [10.0, 20.0]})
        await deal_service.delete_deal(deal, ACTOR_ID)

        result = await analytics_service.stage_analytics(pipeline.id)
        assert result["analytics"][0]["deal_count"] == 1

    async def test_unknown_pipeline(self, analytics_service):
        with pytest.raises(NotFoundError):
            await analytics_service.stage_analytics(9999)


class TestStuckDeals:

    async def test_open_deals_past_threshold(self, analytics_service, deal_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [10.0], "Closed Won": [20.0]})

        later = datetime.now(UTC) + timedelta(days=10)
        stuck = await analytics_service.get_stuck_deals(pipeline.id, now=later)

        assert len(stuck) == 1
        assert stuck[0]["title"] == "Lead 10.0"
        assert stuck[0]["days_in_stage"] == 11

    async def test_nothing_stuck_right_away(self, analytics_service, deal_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [10.0]})
        assert await analytics_service.get_stuck_deals(pipeline.id) == []

    async def test_explicit_threshold_overrides_pipeline_setting(self, analytics_service, deal_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [10.0]})

        later = datetime.now(UTC) + timedelta(days=2)
        assert await analytics_service.get_stuck_deals(pipeline.id, now=later) == []
        assert len(await analytics_service.get_stuck_deals(pipeline.id, threshold_days=1, now=later)) == 1


class TestBoardAndSummary:

    async def test_board_groups_deals_by_stage(self, analytics_service, deal_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [100.0, 50.0], "Qualified": [25.0]})

        board = await analytics_service.deals_by_stage(pipeline.id)
        columns = {col["stage"].name: col for col in board["stages"]}

        assert columns["Lead"]["deal_count"] == 2
        assert columns["Lead"]["total_value"] == 150.0
        assert columns["Qualified"]["deal_count"] == 1
        assert columns["Closed Lost"]["deals"] == []

    async def test_summary_win_rate(self, analytics_service, deal_service, pipeline):
        await seed_deals(deal_service, pipeline, {"Lead": [100.0], "Closed Won": [300.0], "Closed Lost": [50.0, 50.0]})

        summary = await analytics_service.deal_summary(ORG_ID)
        assert summary["total_deals"] == 4
        assert summary["won_deals"] == 1
        assert summary["lost_deals"] == 2
        assert summary["won_value"] == 300.0
        assert summary["win_rate"] == 25.0
        assert summary["avg_value"] == 125.0

    async def test_summary_without_deals(self, analytics_service, pipeline):
        assert await analytics_service.deal_summary(ORG_ID) == {"period_days": 30}

    async def test_dwell_history_from_closed_entries(self, analytics_service, deal_service, pipeline):
        (deal,) = await seed_deals(deal_service, pipeline, {"Lead": [10.0]})
        await deal_service.move_to_stage(deal, stage_of(pipeline, "Qualified").id, changed_by=ACTOR_ID)

        rows = {row["stage_name"]: row for row in await analytics_service.stage_dwell_history(pipeline.id)}
        assert rows["Lead"]["completed_visits"] == 1
        assert rows["Qualified"]["completed_visits"] == 0
