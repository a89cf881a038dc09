"""
MongoDB-backed stores the pipeline reads from and writes to.

- ExamCatalog: exams and their questions (owned by the admin side, read-only here)
- MarkingRuleStore: active marking rules per stream (read-only here)
- ResultStore: append-only exam results, one per submission id
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

from ..models import Exam, ExamResult, Question

logger = logging.getLogger(__name__)


class ExamCatalog:
    """Loads an exam together with its questions in exam order."""

    EXAMS = "exams"
    QUESTIONS = "questions"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.exams_col = db[self.EXAMS]
        self.questions_col = db[self.QUESTIONS]

    async def load(self, exam_id: str) -> Optional[Tuple[Exam, List[Question]]]:
        doc = await self.exams_col.find_one({"exam_id": exam_id}, {"_id": 0})
        if not doc:
            return None

        exam = Exam.model_validate(doc)
        cursor = self.questions_col.find({"question_id": {"$in": exam.question_ids}}, {"_id": 0})
        by_id = {q["question_id"]: q for q in await cursor.to_list(length=None)}

        missing = [qid for qid in exam.question_ids if qid not in by_id]
        if missing:
            logger.warning(f"Exam {exam_id}: {len(missing)} question(s) not found: {missing[:5]}")

        questions = [Question.model_validate(by_id[qid]) for qid in exam.question_ids if qid in by_id]
        return exam, questions

    async def create_indexes(self):
        await self.exams_col.create_index("exam_id", unique=True)
        await self.questions_col.create_index("question_id", unique=True)


class MarkingRuleStore:
    """Read-only access to admin-managed marking rules."""

    COLLECTION = "marking_rules"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    async def active_rules(self, stream: str) -> List[Dict[str, Any]]:
        """Active rules for a stream, highest priority and newest first."""
        cursor = self.collection.find({"stream": stream, "is_active": True}, {"_id": 0}).sort(
            [("priority", -1), ("created_at", -1)]
        )
        return await cursor.to_list(length=None)

    async def create_indexes(self):
        await self.collection.create_index([("stream", 1), ("is_active", 1), ("priority", -1)])


class ResultStore:
    """Exam results. Inserted once per submission, never updated."""

    COLLECTION = "exam_results"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    async def find_by_submission(self, submission_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"submission_id": submission_id}, {"_id": 0})

    async def find(self, result_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"result_id": result_id}, {"_id": 0})

    async def count_attempts(self, exam_id: str, student_id: str) -> int:
        return await self.collection.count_documents({"exam_id": exam_id, "student_id": student_id})

    async def insert(self, result: ExamResult) -> None:
        """Raises DuplicateKeyError when the submission or attempt already has a result."""
        await self.collection.insert_one(result.model_dump())

    async def create_indexes(self):
        await self.collection.create_index("submission_id", unique=True)
        await self.collection.create_index(
            [("exam_id", 1), ("student_id", 1), ("attempt_number", 1)], unique=True
        )
        await self.collection.create_index("student_id")
