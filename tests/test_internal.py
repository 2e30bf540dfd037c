import pytest

from eventcrm.db.enums import JobType
from eventcrm.db.models import Job

HEADERS = {"X-Internal-Secret": "test-internal-secret"}


@pytest.mark.asyncio
async def test_schedule_engagement_scores_once_per_day(client, db):
    first = await client.post("/internal/scheduled/engagement-scores", headers=HEADERS)
    assert first.status_code == 200
    assert first.json()["status"] == "scheduled"

    second = await client.post("/internal/scheduled/engagement-scores", headers=HEADERS)
    assert second.json()["status"] == "already_scheduled"

    db.rollback()
    jobs = db.query(Job).all()
    assert len(jobs) == 1
    assert jobs[0].job_type == JobType.ENGAGEMENT_SCORING.value


@pytest.mark.asyncio
async def test_internal_requires_secret(client):
    missing = await client.post("/internal/scheduled/engagement-scores")
    assert missing.status_code == 422

    wrong = await client.post(
        "/internal/scheduled/engagement-scores", headers={"X-Internal-Secret": "nope"}
    )
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
