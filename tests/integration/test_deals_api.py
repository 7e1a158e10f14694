import pytest
from httpx import AsyncClient

ORG = {"organization_id": "org-1", "actor_id": "user-1"}
ACTOR = {"actor_id": "user-1"}


@pytest.fixture
async def pipeline(client: AsyncClient) -> dict:
    response = await client.post("/api/v1/pipelines", json={"name": "Sales", "is_default": True}, params=ORG)
    assert response.status_code == 201
    return response.json()


def stage_id(pipeline: dict, name: str) -> int:
    return next(s["id"] for s in pipeline["stages"] if s["name"] == name)


async def create_deal(client: AsyncClient, **body) -> dict:
    body.setdefault("title", "ACME renewal")
    body.setdefault("value", 1200.0)
    response = await client.post("/api/v1/deals", json=body, params=ORG)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_deal_on_default_pipeline(client: AsyncClient, pipeline: dict):
    deal = await create_deal(client, currency="eur")

    assert deal["pipeline_id"] == pipeline["id"]
    assert deal["stage_id"] == stage_id(pipeline, "Lead")
    assert deal["status"] == "open"
    assert deal["probability"] == 10
    assert deal["currency"] == "EUR"
    assert len(deal["stage_history"]) == 1
    assert deal["stage_history"][0]["stage_name"] == "Lead"


@pytest.mark.asyncio
async def test_move_deal_to_won(client: AsyncClient, pipeline: dict):
    deal = await create_deal(client)

    response = await client.post(
        f"/api/v1/deals/{deal['id']}/move",
        json={"stage_id": stage_id(pipeline, "Closed Won"), "actor_id": "user-2", "reason": "signed"},
    )
    assert response.status_code == 200
    moved = response.json()
    assert moved["status"] == "won"
    assert moved["probability"] == 100
    assert moved["actual_close_date"] is not None

    response = await client.get(f"/api/v1/deals/{deal['id']}/history")
    history = response.json()
    assert [h["stage_name"] for h in history] == ["Lead", "Closed Won"]
    assert history[0]["exited_at"] is not None
    assert history[0]["duration"] >= 0
    assert history[1]["changed_by"] == "user-2"


@pytest.mark.asyncio
async def test_move_to_same_stage_is_bad_request(client: AsyncClient, pipeline: dict):
    deal = await create_deal(client)

    response = await client.post(
        f"/api/v1/deals/{deal['id']}/move",
        json={"stage_id": deal["stage_id"], "actor_id": "user-1"},
    )
    assert response.status_code == 400
    body = response.json()["detail"]
    assert body["code"] == "validation_error"
    assert body["context"]["deal_id"] == deal["id"]


@pytest.mark.asyncio
async def test_move_to_missing_stage_is_not_found(client: AsyncClient, pipeline: dict):
    deal = await create_deal(client)
    response = await client.post(
        f"/api/v1/deals/{deal['id']}/move", json={"stage_id": 9999, "actor_id": "user-1"}
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_move_missing_deal(client: AsyncClient, pipeline: dict):
    response = await client.post("/api/v1/deals/9999/move", json={"stage_id": 1, "actor_id": "user-1"})
    assert response.status_code == 404
    assert response.json()["detail"]["message"] == "Deal not found"


@pytest.mark.asyncio
async def test_update_and_list_deals(client: AsyncClient, pipeline: dict):
    deal = await create_deal(client)
    await create_deal(client, title="Second")

    response = await client.patch(
        f"/api/v1/deals/{deal['id']}",
        json={"value": 5000.0, "stage_id": stage_id(pipeline, "Qualified")},
        params=ACTOR,
    )
    assert response.status_code == 200
    assert response.json()["value"] == 5000.0
    assert response.json()["probability"] == 25

    response = await client.get(
        "/api/v1/deals",
        params={"organization_id": "org-1", "stage_id": stage_id(pipeline, "Qualified")},
    )
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == deal["id"]

    response = await client.get("/api/v1/deals", params={"organization_id": "org-1", "page_size": 1})
    data = response.json()
    assert data["total"] == 2
    assert data["has_next"] is True


@pytest.mark.asyncio
async def test_delete_deal(client: AsyncClient, pipeline: dict):
    deal = await create_deal(client)

    response = await client.delete(f"/api/v1/deals/{deal['id']}", params=ACTOR)
    assert response.status_code == 204
    assert (await client.get(f"/api/v1/deals/{deal['id']}")).status_code == 404

    response = await client.post(
        f"/api/v1/deals/{deal['id']}/move", json={"stage_id": pipeline["stages"][1]["id"], "actor_id": "user-1"}
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_remove_stage_with_deals_is_rejected(client: AsyncClient, pipeline: dict):
    await create_deal(client)
    response = await client.delete(
        f"/api/v1/pipelines/{pipeline['id']}/stages/{stage_id(pipeline, 'Lead')}", params=ACTOR
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_pipeline_analytics_board_and_stuck(client: AsyncClient, pipeline: dict):
    await create_deal(client, value=100.0)
    await create_deal(client, value=300.0)
    await create_deal(client, value=500.0, stage_id=stage_id(pipeline, "Qualified"))

    response = await client.get(f"/api/v1/pipelines/{pipeline['id']}/analytics")
    assert response.status_code == 200
    lead = response.json()["analytics"][0]
    assert lead["stage_name"] == "Lead"
    assert lead["deal_count"] == 2
    assert lead["avg_value"] == 200.0
    assert lead["conversion_rate"] == 50.0

    response = await client.get(f"/api/v1/pipelines/{pipeline['id']}/board")
    columns = response.json()["stages"]
    assert columns[0]["deal_count"] == 2
    assert columns[1]["total_value"] == 500.0

    response = await client.get(f"/api/v1/pipelines/{pipeline['id']}/stuck")
    assert response.json() == []

    response = await client.get(f"/api/v1/pipelines/{pipeline['id']}/dwell-history")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_deal_summary(client: AsyncClient, pipeline: dict):
    response = await client.get("/api/v1/deals/analytics/summary", params={"organization_id": "org-1"})
    assert response.status_code == 200
    assert response.json()["total_deals"] == 0

    deal = await create_deal(client)
    await client.post(
        f"/api/v1/deals/{deal['id']}/move",
        json={"stage_id": stage_id(pipeline, "Closed Won"), "actor_id": "user-1"},
    )
    response = await client.get("/api/v1/deals/analytics/summary", params={"organization_id": "org-1"})
    assert response.json()["win_rate"] == 100.0
