import pytest
from pymongo.errors import AutoReconnect

from examflow.errors import SubmissionLostError, SubmissionValidationError
from examflow.models import QueueStatus, SubmissionContext
from examflow.services.scoring import MAX_ATTEMPTS_EXCEEDED


async def test_interactive_submission_returns_result(pipeline, seed_exam, make_submission):
    await seed_exam()

    response = await pipeline.submissions.submit(make_submission())

    assert response["success"] is True
    assert response["mode"] == "interactive"
    assert response["status"] == "completed"
    assert response["result"]["score"] == 6
    assert response["result"]["statistics"]["partially_correct"] == 1


async def test_queue_all_submissions_skips_interactive_scoring(pipeline, settings, db, seed_exam, make_submission):
    await seed_exam()
    settings.QUEUE_ALL_SUBMISSIONS = True

    response = await pipeline.submissions.submit(make_submission(), SubmissionContext(exam_ended=True))

    entry = await pipeline.queue.get(response["submission_id"])
    assert response["mode"] == "queued"
    assert response["estimated_processing_time"] == 30
    assert entry.priority == 6
    assert await db.exam_results.count_documents({}) == 0


async def test_persistent_transient_failure_falls_back_to_queue(pipeline, seed_exam, make_submission, monkeypatch):
    await seed_exam()
    calls = {"count": 0}

    async def unavailable(*args, **kwargs):
        calls["count"] += 1
        raise AutoReconnect("primary stepped down")

    monkeypatch.setattr(pipeline.engine, "score_and_save", unavailable)

    response = await pipeline.submissions.submit(make_submission())

    assert calls["count"] == 4
    assert response["success"] is True
    assert response["mode"] == "queued"
    entry = await pipeline.queue.get(response["submission_id"])
    assert entry.status == QueueStatus.QUEUED.value


async def test_enqueue_failure_uses_emergency_backup(pipeline, settings, make_submission, monkeypatch):
    settings.QUEUE_ALL_SUBMISSIONS = True

    async def broken_enqueue(*args, **kwargs):
        raise AutoReconnect("counter unavailable")

    monkeypatch.setattr(pipeline.queue, "enqueue", broken_enqueue)

    response = await pipeline.submissions.submit(make_submission())

    assert response["submission_id"].startswith("sub_")
    entry = await pipeline.queue.get(response["submission_id"])
    assert entry.audit.is_emergency_backup
    assert entry.priority == 10


async def test_enqueue_reported_failed_after_write_is_scored_once(
    pipeline, settings, db, seed_exam, make_submission, monkeypatch
):
    await seed_exam(reattempt=3)
    settings.QUEUE_ALL_SUBMISSIONS = True
    real_enqueue = pipeline.queue.enqueue

    async def write_then_disconnect(*args, **kwargs):
        await real_enqueue(*args, **kwargs)
        raise AutoReconnect("connection closed before acknowledgement")

    monkeypatch.setattr(pipeline.queue, "enqueue", write_then_disconnect)

    response = await pipeline.submissions.submit(make_submission())
    for _ in range(3):
        await pipeline.processor.run_cycle()

    entry = await pipeline.queue.get(response["submission_id"])
    assert await db.exam_submission_queue.count_documents({}) == 1
    assert await db.exam_results.count_documents({}) == 1
    assert entry.status == QueueStatus.COMPLETED.value
    assert not entry.audit.is_emergency_backup


async def test_every_write_failing_raises_submission_lost(pipeline, settings, make_submission, monkeypatch):
    settings.QUEUE_ALL_SUBMISSIONS = True

    async def broken(*args, **kwargs):
        raise AutoReconnect("cluster unavailable")

    async def lost(submission, error, context=None, submission_id=None):
        raise SubmissionLostError(submission["exam_id"], submission["student_id"], error)

    monkeypatch.setattr(pipeline.queue, "enqueue", broken)
    monkeypatch.setattr(pipeline.queue, "emergency_backup", lost)

    with pytest.raises(SubmissionLostError):
        await pipeline.submissions.submit(make_submission())


async def test_attempt_limit_is_a_rejection(pipeline, seed_exam, make_submission):
    await seed_exam()
    await pipeline.submissions.submit(make_submission())

    response = await pipeline.submissions.submit(make_submission())

    assert response["success"] is False
    assert response["status"] == "rejected"
    assert response["code"] == MAX_ATTEMPTS_EXCEEDED


async def test_malformed_submission_raises(pipeline, db):
    with pytest.raises(SubmissionValidationError):
        await pipeline.submissions.submit({"student_id": "student_1", "answers": "none"})

    assert await db.exam_submission_queue.count_documents({}) == 0


async def test_status_for_interactive_submission(pipeline, seed_exam, make_submission):
    await seed_exam()
    response = await pipeline.submissions.submit(make_submission())

    status = await pipeline.submissions.status(response["submission_id"])

    assert status["status"] == "completed"
    assert status["progress"]["percentage"] == 100
    assert status["result"]["score"] == 6


async def test_status_follows_queue_processing(pipeline, settings, seed_exam, make_submission):
    await seed_exam()
    settings.QUEUE_ALL_SUBMISSIONS = True
    submission_id = (await pipeline.submissions.submit(make_submission()))["submission_id"]

    queued = await pipeline.submissions.status(submission_id)
    await pipeline.processor.run_cycle()
    completed = await pipeline.submissions.status(submission_id)

    assert queued["status"] == "queued"
    assert queued["progress"]["stage"] == "Waiting in queue"
    assert completed["status"] == "completed"
    assert completed["result"]["score"] == 6


async def test_status_for_unknown_submission(pipeline):
    assert await pipeline.submissions.status("sub_missing") is None


async def test_retry_submission_requeues_failed_entry(pipeline, make_submission):
    submission_id = await pipeline.queue.enqueue(make_submission(exam_id="missing"))
    await pipeline.processor.run_cycle()

    retried = await pipeline.submissions.retry_submission(submission_id)

    assert retried["status"] == "queued"
    assert retried["priority"] == 5
    assert await pipeline.submissions.retry_submission("sub_missing") is None
