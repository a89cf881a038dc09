from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from examflow.config.settings import Settings
from examflow.services import ExamPipeline, RetryPolicy
from examflow.services.capacity import CapacitySignals
from examflow.utils import utcnow


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeProbe:
    def __init__(self, signals: CapacitySignals = None, error: Exception = None):
        self.signals = signals or CapacitySignals(memory_mb=2000, current_connections=10, available_connections=1480)
        self.error = error
        self.calls = 0

    async def collect(self) -> CapacitySignals:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.signals


async def _no_sleep(seconds):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    test_settings = Settings()
    test_settings.DATABASE_NAME = "examflow_test"
    test_settings.CRON_SECRET = None
    test_settings.ADMIN_SECRET = None
    test_settings.EXAM_BATCH_SIZE = 20
    test_settings.BATCH_CONCURRENCY = 5
    test_settings.ENABLE_AUTO_SCALING = False
    test_settings.AUTO_SCALING_PROFILE = "moderate"
    test_settings.QUEUE_ALL_SUBMISSIONS = False
    test_settings.QUEUE_MAX_ATTEMPTS = 3
    test_settings.QUEUE_RETRY_INITIAL_DELAY_MS = 1000
    test_settings.QUEUE_RETRY_BACKOFF = 2
    test_settings.QUEUE_RETRY_MAX_DELAY_MS = 300000
    test_settings.QUEUE_RETENTION_DAYS = 7
    test_settings.STALE_PROCESSING_MINUTES = 60
    test_settings.WORKER_POLL_SECONDS = 30
    return test_settings


@pytest.fixture
def db():
    return AsyncMongoMockClient()["examflow_test"]


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def retry_policy():
    return RetryPolicy(sleep=_no_sleep, rand=lambda: 0.0)


@pytest.fixture
async def pipeline(db, settings, clock, probe, retry_policy):
    exam_pipeline = ExamPipeline(db, settings, clock=clock, capacity_probe=probe, retry_policy=retry_policy)
    await exam_pipeline.start()
    yield exam_pipeline
    await exam_pipeline.stop()


JEE_QUESTIONS = [
    {"question_id": "q1", "subject": "Physics", "section": 1, "answer": "A"},
    {"question_id": "q2", "subject": "Chemistry", "section": 1, "answer": "B"},
    {
        "question_id": "q3",
        "subject": "Mathematics",
        "section": 2,
        "is_multiple_answer": True,
        "multiple_answer": ["A", "B", "C", "D"],
    },
    {"question_id": "q4", "subject": "Physics", "section": 2, "user_input_answer": True, "answer": "9.8"},
]


@pytest.fixture
def seed_exam(db):
    """Insert an exam and its questions. Defaults to a four-question JEE paper."""

    async def _seed(exam_id="exam_jee", stream="JEE", questions=None, **exam_fields):
        questions = JEE_QUESTIONS if questions is None else questions
        await db.questions.insert_many(
            [{**q, "question_id": f"{exam_id}_{q['question_id']}"} for q in questions]
        )
        exam = {
            "exam_id": exam_id,
            "exam_name": f"{stream} mock test",
            "stream": stream,
            "standard": "12",
            "reattempt": 1,
            "question_ids": [f"{exam_id}_{q['question_id']}" for q in questions],
            **exam_fields,
        }
        await db.exams.insert_one(exam)
        return exam

    return _seed


@pytest.fixture
def make_submission(clock):
    """Build a raw submission; answer keys are the short ids (q1, q2...)."""

    def _make(answers=None, exam_id="exam_jee", student_id="student_1", **fields):
        answers = {"q1": "A", "q2": "C", "q3": ["A", "B", "C"]} if answers is None else answers
        return {
            "exam_id": exam_id,
            "student_id": student_id,
            "answers": {f"{exam_id}_{qid}": value for qid, value in answers.items()},
            "time_taken": 3600,
            "completed_at": clock().isoformat(),
            **fields,
        }

    return _make


@pytest.fixture
def seed_rule(db, clock):
    async def _seed(**fields):
        rule = {
            "stream": "JEE",
            "positive_marks": 4,
            "negative_marks": 1,
            "priority": 0,
            "is_active": True,
            "created_at": clock(),
            **fields,
        }
        await db.marking_rules.insert_one(rule)
        return rule

    return _seed
