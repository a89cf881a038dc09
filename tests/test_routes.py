import httpx
import pytest

from main import create_app

CRON = {"Authorization": "Bearer cron-secret"}


@pytest.fixture
async def client(pipeline, settings):
    settings.CRON_SECRET = "cron-secret"
    app = create_app(pipeline)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["pipeline"] == "started"


async def test_submit_and_poll_status(client, seed_exam, make_submission):
    await seed_exam()

    submitted = await client.post("/api/exam/submit", json={"submission": make_submission()})
    body = submitted.json()
    status = await client.get("/api/exam/submission-status", params={"submission_id": body["submission_id"]})

    assert submitted.status_code == 200
    assert body["mode"] == "interactive"
    assert body["result"]["score"] == 6
    assert status.status_code == 200
    assert status.json()["status"] == "completed"


async def test_submit_validation_error(client):
    response = await client.post("/api/exam/submit", json={"submission": {"exam_id": "exam_jee"}})

    assert response.status_code == 400
    assert "Missing student ID" in response.json()["detail"]["errors"]


async def test_submit_rejections(client, seed_exam, make_submission):
    await seed_exam()
    await client.post("/api/exam/submit", json={"submission": make_submission()})

    repeat = await client.post("/api/exam/submit", json={"submission": make_submission()})
    unknown = await client.post("/api/exam/submit", json={"submission": make_submission(exam_id="missing")})

    assert repeat.status_code == 409
    assert repeat.json()["detail"]["code"] == "max_attempts_exceeded"
    assert unknown.status_code == 404


async def test_unknown_submission_status(client):
    response = await client.get("/api/exam/submission-status", params={"submission_id": "sub_missing"})

    assert response.status_code == 404


async def test_cron_requires_configured_secret(client, settings):
    settings.CRON_SECRET = None

    response = await client.get("/api/cron/process-submissions", headers=CRON)

    assert response.status_code == 500


async def test_cron_rejects_wrong_secret(client):
    missing = await client.post("/api/cron/process-submissions")
    wrong = await client.post("/api/cron/process-submissions", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


async def test_cron_processes_queue(client, pipeline, seed_exam, make_submission):
    await seed_exam()
    await pipeline.queue.enqueue(make_submission())

    response = await client.post("/api/cron/process-submissions", headers=CRON, params={"batch_size": 5})

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["processed"] == 1
    assert body["succeeded"] == 1
    assert body["batchSize"] == 5
    assert body["cronJobId"].startswith("cron_")


async def test_admin_routes_fall_back_to_cron_secret(client, settings):
    stats = await client.get("/api/admin/queue-stats", headers=CRON)

    settings.ADMIN_SECRET = "admin-secret"
    with_cron = await client.get("/api/admin/queue-stats", headers=CRON)

    assert stats.status_code == 200
    assert "rule_resolution" in stats.json()
    assert with_cron.status_code == 401


async def test_admin_retry_unknown_submission(client):
    response = await client.post("/api/admin/retry-submission", headers=CRON, json={"submission_id": "sub_missing"})

    assert response.status_code == 404


async def test_batch_scaling_monitoring(client):
    tier = await client.get("/api/monitoring/batch-scaling", headers=CRON, params={"action": "tier-info"})
    recommendations = await client.get(
        "/api/monitoring/batch-scaling", headers=CRON, params={"action": "recommendations"}
    )
    bad_action = await client.get("/api/monitoring/batch-scaling", headers=CRON, params={"action": "explode"})
    bad_profile = await client.get("/api/monitoring/batch-scaling", headers=CRON, params={"profile": "reckless"})

    assert tier.status_code == 200
    assert tier.json()["tier"] == "M10"
    assert set(recommendations.json()["recommendations"]) == {"conservative", "moderate", "aggressive"}
    assert bad_action.status_code == 400
    assert bad_profile.status_code == 400
