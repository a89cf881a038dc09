"""
Durable submission queue on MongoDB.

Entry lifecycle:
    queued -> processing -> completed | failed | retrying
    retrying -> processing (once next_retry_at has passed) -> completed | failed

Leasing is a single find_one_and_update per entry, so two workers can never
hold the same entry. Entries are leased by priority (highest first) and then
by a monotonic sequence number taken from a counter document at enqueue time.
"""

import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..config.settings import Settings
from ..errors import SubmissionLostError, SubmissionValidationError
from ..models import QueueEntry, QueueStatus, SubmissionContext
from ..utils import elapsed_ms, utcnow
from .validation import validate_submission

logger = logging.getLogger(__name__)

BASE_PRIORITY = 1
AUTO_SUBMIT_BOOST = 3
LOW_TIME_BOOST = 2
LOW_TIME_THRESHOLD_SECONDS = 300
EXAM_ENDED_BOOST = 5
MANUAL_RETRY_BOOST = 1

EMERGENCY_PRIORITY = 10
EMERGENCY_MAX_ATTEMPTS = 10
ADMIN_RETRY_PRIORITY = 5

PROGRESS = {
    QueueStatus.QUEUED.value: ("Waiting in queue", 10, "Your submission is queued for processing"),
    QueueStatus.PROCESSING.value: ("Processing answers", 50, "Your answers are being scored"),
    QueueStatus.RETRYING.value: ("Retrying", 25, "Processing is being retried"),
    QueueStatus.COMPLETED.value: ("Complete", 100, "Your results are ready!"),
    QueueStatus.FAILED.value: ("Processing failed", 0, "Processing failed, support has been notified"),
}


def compute_priority(context: Optional[SubmissionContext]) -> int:
    """Higher runs sooner: auto-submits, nearly timed-out and already ended exams jump ahead."""
    priority = BASE_PRIORITY
    if context is None:
        return priority
    if context.is_auto_submit:
        priority += AUTO_SUBMIT_BOOST
    if context.time_remaining is not None and context.time_remaining < LOW_TIME_THRESHOLD_SECONDS:
        priority += LOW_TIME_BOOST
    if context.exam_ended:
        priority += EXAM_ENDED_BOOST
    if context.is_retry:
        priority += MANUAL_RETRY_BOOST
    return priority


def progress_for(entry: QueueEntry) -> Dict[str, Any]:
    """Human-readable stage/percentage/message for a queue entry."""
    stage, percentage, message = PROGRESS[entry.status]
    if entry.status == QueueStatus.RETRYING.value:
        message = f"Retrying (attempt {entry.processing.attempts + 1}/{entry.processing.max_attempts})"
    elif entry.status == QueueStatus.FAILED.value and entry.errors:
        message = f"{message}: {entry.errors[-1].message}"
    return {"stage": stage, "percentage": percentage, "message": message}


class SubmissionQueue:
    """Prioritized, retryable queue of exam submissions."""

    COLLECTION = "exam_submission_queue"
    COUNTERS = "counters"
    COUNTER_ID = "submission_queue"

    def __init__(self, db: AsyncIOMotorDatabase, settings: Settings, clock: Callable = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.collection = db[self.COLLECTION]
        self.counters = db[self.COUNTERS]

    # ============ ENQUEUE ============

    async def _next_sequence(self) -> int:
        doc = await self.counters.find_one_and_update(
            {"_id": self.COUNTER_ID},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["seq"]

    def _new_document(
        self,
        submission_id: str,
        submission: Dict[str, Any],
        context: SubmissionContext,
        priority: int,
        max_attempts: int,
        sequence: int,
        queued_by: str,
    ) -> Dict[str, Any]:
        now = self.clock()
        return {
            "submission_id": submission_id,
            "exam_id": submission.get("exam_id"),
            "student_id": submission.get("student_id"),
            "status": QueueStatus.QUEUED.value,
            "priority": priority,
            "sequence": sequence,
            "submission_data": submission,
            "processing": {
                "attempts": 0,
                "max_attempts": max_attempts,
                "started_at": None,
                "completed_at": None,
                "last_attempt_at": None,
                "worker_id": None,
                "next_retry_at": None,
                "processing_time_ms": None,
            },
            "errors": [],
            "exam_result_id": None,
            "metrics": {},
            "audit": {
                "queued_at": now,
                "queued_by": queued_by,
                "session_id": context.session_id,
                "submission_context": context.model_dump(),
                "is_emergency_backup": False,
                "original_error": None,
            },
            "created_at": now,
            "updated_at": now,
        }

    async def enqueue(
        self,
        submission: Dict[str, Any],
        context: Optional[SubmissionContext] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
        queued_by: str = "system",
        submission_id: Optional[str] = None,
    ) -> str:
        """
        Validate and persist a submission with status queued.

        Args:
            submission: Raw submission payload, stored verbatim
            context: How the submission happened (auto-submit, time left, ...)
            priority: Explicit priority instead of the context-derived one
            max_attempts: Explicit attempt limit instead of QUEUE_MAX_ATTEMPTS
            submission_id: Reuse an id already handed out by the interactive path

        Returns:
            The new submission id

        Raises:
            SubmissionValidationError: the payload is malformed
        """
        problems = validate_submission(submission)
        if problems:
            raise SubmissionValidationError(problems)

        context = context or SubmissionContext()
        submission_id = submission_id or f"sub_{uuid.uuid4().hex}"
        doc = self._new_document(
            submission_id=submission_id,
            submission=submission,
            context=context,
            priority=compute_priority(context) if priority is None else priority,
            max_attempts=max_attempts or self.settings.QUEUE_MAX_ATTEMPTS,
            sequence=await self._next_sequence(),
            queued_by=queued_by,
        )
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"Submission {submission_id} is already queued")
            return submission_id

        logger.info(
            f"📥 Queued submission {submission_id} (exam {doc['exam_id']}, student {doc['student_id']}, "
            f"priority {doc['priority']})"
        )
        return submission_id

    async def emergency_backup(
        self,
        submission: Dict[str, Any],
        error: BaseException,
        context: Optional[SubmissionContext] = None,
        submission_id: Optional[str] = None,
    ) -> str:
        """
        Last-resort write when enqueue failed. One plain insert, no counter round-trip.

        When ``submission_id`` is given and an entry with that id already
        exists (the failed enqueue actually reached the server), nothing new
        is written and the id is returned.

        Raises:
            SubmissionLostError: the backup write failed too
        """
        context = context or SubmissionContext()
        submission_id = submission_id or f"emergency-{uuid.uuid4()}"
        doc = self._new_document(
            submission_id=submission_id,
            submission=submission,
            context=context,
            priority=EMERGENCY_PRIORITY,
            max_attempts=EMERGENCY_MAX_ATTEMPTS,
            sequence=int(time.time() * 1000),
            queued_by="emergency_backup",
        )
        doc["audit"]["is_emergency_backup"] = True
        doc["audit"]["original_error"] = str(error)

        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            logger.warning(f"⚠️ Submission {submission_id} was stored by the failed enqueue, no backup needed")
            return submission_id
        except Exception as e:
            exam_id = submission.get("exam_id") if isinstance(submission, dict) else None
            student_id = submission.get("student_id") if isinstance(submission, dict) else None
            logger.critical(
                f"🚨 SUBMISSION MAY BE LOST: emergency backup failed for exam {exam_id}, "
                f"student {student_id}. Original error: {error}. Backup error: {e}",
                exc_info=True,
            )
            raise SubmissionLostError(exam_id, student_id, e) from e

        logger.warning(f"⚠️ Emergency backup stored as {submission_id} after enqueue failure: {error}")
        return submission_id

    # ============ LEASING ============

    async def lease_one(self, worker_id: str) -> Optional[QueueEntry]:
        """Atomically claim the next runnable entry, or None when nothing is runnable."""
        now = self.clock()
        doc = await self.collection.find_one_and_update(
            {
                "$or": [
                    {"status": QueueStatus.QUEUED.value},
                    {"status": QueueStatus.RETRYING.value, "processing.next_retry_at": {"$lte": now}},
                ]
            },
            {
                "$set": {
                    "status": QueueStatus.PROCESSING.value,
                    "processing.started_at": now,
                    "processing.last_attempt_at": now,
                    "processing.worker_id": worker_id,
                    "updated_at": now,
                },
                "$inc": {"processing.attempts": 1},
            },
            sort=[("priority", -1), ("sequence", 1)],
            return_document=ReturnDocument.AFTER,
        )
        return QueueEntry.model_validate(doc) if doc else None

    async def lease_batch(self, size: int, worker_id: str) -> List[QueueEntry]:
        """Claim up to ``size`` entries in priority order, one atomic lease each."""
        leased = []
        for _ in range(max(size, 0)):
            entry = await self.lease_one(worker_id)
            if entry is None:
                break
            leased.append(entry)
        return leased

    def _lease_filter(self, entry: QueueEntry) -> Dict[str, Any]:
        return {
            "submission_id": entry.submission_id,
            "status": QueueStatus.PROCESSING.value,
            "processing.worker_id": entry.processing.worker_id,
        }

    # ============ STATE TRANSITIONS ============

    async def mark_completed(
        self,
        entry: QueueEntry,
        result_ref: str,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record success. Returns False when the lease was lost to another worker."""
        now = self.clock()
        started_at = entry.processing.started_at or now
        processing_time_ms = elapsed_ms(started_at, now)
        recorded = dict(metrics or {})
        recorded["queue_wait_ms"] = elapsed_ms(entry.created_at, started_at)
        recorded["processing_time_ms"] = processing_time_ms

        result = await self.collection.update_one(
            self._lease_filter(entry),
            {
                "$set": {
                    "status": QueueStatus.COMPLETED.value,
                    "processing.completed_at": now,
                    "processing.processing_time_ms": processing_time_ms,
                    "exam_result_id": result_ref,
                    "metrics": recorded,
                    "updated_at": now,
                }
            },
        )
        if result.modified_count == 0:
            logger.warning(f"⚠️ Submission {entry.submission_id} was no longer leased by {entry.processing.worker_id}")
            return False
        return True

    def retry_delay_ms(self, attempts: int) -> int:
        delay = self.settings.QUEUE_RETRY_INITIAL_DELAY_MS * self.settings.QUEUE_RETRY_BACKOFF ** attempts
        return int(min(self.settings.QUEUE_RETRY_MAX_DELAY_MS, delay))

    async def mark_failed(
        self,
        entry: QueueEntry,
        error: Union[BaseException, str],
        should_retry: bool = True,
        code: Optional[str] = None,
    ) -> Optional[str]:
        """
        Record a failed attempt. Schedules a retry while attempts remain.

        Returns:
            The new status ("retrying" or "failed"), or None when the lease was lost
        """
        now = self.clock()
        attempts = entry.processing.attempts
        error_record = {
            "timestamp": now,
            "attempt": attempts,
            "message": str(error)[:1000],
            "code": code,
            "error_type": type(error).__name__ if isinstance(error, BaseException) else None,
        }
        update: Dict[str, Any] = {"updated_at": now}

        if should_retry and attempts < entry.processing.max_attempts:
            delay_ms = self.retry_delay_ms(attempts)
            status = QueueStatus.RETRYING.value
            update["processing.next_retry_at"] = now + timedelta(milliseconds=delay_ms)
            logger.warning(
                f"⚠️ Submission {entry.submission_id} failed attempt {attempts}/{entry.processing.max_attempts}, "
                f"retrying in {delay_ms}ms: {error_record['message'][:200]}"
            )
        else:
            status = QueueStatus.FAILED.value
            update["processing.next_retry_at"] = None
            logger.error(
                f"❌ Submission {entry.submission_id} failed permanently after {attempts} attempt(s): "
                f"{error_record['message'][:200]}"
            )
        update["status"] = status

        result = await self.collection.update_one(
            self._lease_filter(entry),
            {"$set": update, "$push": {"errors": error_record}},
        )
        if result.modified_count == 0:
            logger.warning(f"⚠️ Submission {entry.submission_id} was no longer leased by {entry.processing.worker_id}")
            return None
        return status

    async def retry_failed(self, submission_id: str) -> Optional[QueueEntry]:
        """Admin action: put a failed entry back in the queue with elevated priority."""
        doc = await self.collection.find_one(
            {"submission_id": submission_id, "status": QueueStatus.FAILED.value}, {"_id": 0}
        )
        if not doc:
            return None

        entry = QueueEntry.model_validate(doc)
        now = self.clock()
        updated = await self.collection.find_one_and_update(
            {"submission_id": submission_id, "status": QueueStatus.FAILED.value},
            {
                "$set": {
                    "status": QueueStatus.QUEUED.value,
                    "priority": ADMIN_RETRY_PRIORITY,
                    "processing.max_attempts": max(entry.processing.max_attempts, entry.processing.attempts + 1),
                    "processing.next_retry_at": None,
                    "processing.worker_id": None,
                    "audit.manual_retry_at": now,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            return None
        logger.info(f"🔁 Submission {submission_id} manually re-queued")
        return QueueEntry.model_validate(updated)

    # ============ HOUSEKEEPING ============

    async def purge_completed(self, older_than_days: Optional[int] = None) -> int:
        """Delete completed entries older than the retention window. Returns number deleted."""
        days = older_than_days if older_than_days is not None else self.settings.QUEUE_RETENTION_DAYS
        cutoff = self.clock() - timedelta(days=days)
        result = await self.collection.delete_many(
            {"status": QueueStatus.COMPLETED.value, "processing.completed_at": {"$lt": cutoff}}
        )
        if result.deleted_count:
            logger.info(f"✅ Purged {result.deleted_count} completed submissions older than {days} days")
        return result.deleted_count

    async def recover_stale(self, timeout_minutes: Optional[int] = None) -> Dict[str, int]:
        """Release entries stuck in processing (crashed worker) back to retrying or failed."""
        minutes = timeout_minutes if timeout_minutes is not None else self.settings.STALE_PROCESSING_MINUTES
        now = self.clock()
        cutoff = now - timedelta(minutes=minutes)
        cursor = self.collection.find(
            {"status": QueueStatus.PROCESSING.value, "processing.started_at": {"$lt": cutoff}},
            {"_id": 0},
        )

        recovered = {"retrying": 0, "failed": 0}
        for doc in await cursor.to_list(length=None):
            entry = QueueEntry.model_validate(doc)
            exhausted = entry.processing.attempts >= entry.processing.max_attempts
            status = QueueStatus.FAILED.value if exhausted else QueueStatus.RETRYING.value
            result = await self.collection.update_one(
                {**self._lease_filter(entry), "processing.started_at": entry.processing.started_at},
                {
                    "$set": {"status": status, "processing.next_retry_at": None if exhausted else now, "updated_at": now},
                    "$push": {
                        "errors": {
                            "timestamp": now,
                            "attempt": entry.processing.attempts,
                            "message": f"Processing timed out after {minutes} minutes",
                            "code": "stale_lease",
                            "error_type": None,
                        }
                    },
                },
            )
            if result.modified_count:
                recovered[status] += 1

        if recovered["retrying"] or recovered["failed"]:
            logger.warning(
                f"⚠️ Recovered stale submissions (>{minutes} min): "
                f"{recovered['retrying']} retrying, {recovered['failed']} failed"
            )
        return recovered

    # ============ QUERIES ============

    async def get(self, submission_id: str) -> Optional[QueueEntry]:
        doc = await self.collection.find_one({"submission_id": submission_id}, {"_id": 0})
        return QueueEntry.model_validate(doc) if doc else None

    async def load(self) -> int:
        """Current depth: queued plus processing entries."""
        return await self.collection.count_documents(
            {"status": {"$in": [QueueStatus.QUEUED.value, QueueStatus.PROCESSING.value]}}
        )

    async def recent_average_processing_ms(self, sample: int = 50) -> Optional[float]:
        cursor = self.collection.find(
            {"status": QueueStatus.COMPLETED.value, "processing.processing_time_ms": {"$ne": None}},
            {"_id": 0, "processing.processing_time_ms": 1},
        ).sort("processing.completed_at", -1).limit(sample)
        times = [d["processing"]["processing_time_ms"] for d in await cursor.to_list(length=sample)]
        if not times:
            return None
        return sum(times) / len(times)

    async def stats(self) -> Dict[str, Any]:
        """Counts per status, average wait/processing time and the latest failures."""
        counts = {}
        for status in QueueStatus:
            counts[status.value] = await self.collection.count_documents({"status": status.value})

        cursor = self.collection.find(
            {"status": QueueStatus.COMPLETED.value}, {"_id": 0, "metrics": 1}
        ).sort("processing.completed_at", -1).limit(100)
        completed = await cursor.to_list(length=100)
        waits = [d["metrics"]["queue_wait_ms"] for d in completed if "queue_wait_ms" in d.get("metrics", {})]
        times = [d["metrics"]["processing_time_ms"] for d in completed if "processing_time_ms" in d.get("metrics", {})]

        cursor = self.collection.find(
            {"status": {"$in": [QueueStatus.FAILED.value, QueueStatus.RETRYING.value]}},
            {"_id": 0, "submission_id": 1, "exam_id": 1, "student_id": 1, "status": 1, "errors": 1, "processing": 1},
        ).sort("processing.last_attempt_at", -1).limit(5)
        recent_failures = []
        for doc in await cursor.to_list(length=5):
            errors = doc.get("errors") or []
            recent_failures.append({
                "submission_id": doc["submission_id"],
                "exam_id": doc.get("exam_id"),
                "student_id": doc.get("student_id"),
                "status": doc["status"],
                "attempts": doc.get("processing", {}).get("attempts", 0),
                "last_error": errors[-1]["message"] if errors else None,
                "last_attempt_at": doc.get("processing", {}).get("last_attempt_at"),
            })

        return {
            "counts": counts,
            "total": sum(counts.values()),
            "average_queue_wait_ms": round(sum(waits) / len(waits), 2) if waits else None,
            "average_processing_time_ms": round(sum(times) / len(times), 2) if times else None,
            "recent_failures": recent_failures,
        }

    # ============ INDEXES ============

    async def create_indexes(self):
        await self.collection.create_index("submission_id", unique=True)
        await self.collection.create_index([("status", 1), ("priority", -1), ("sequence", 1)])
        await self.collection.create_index([("status", 1), ("processing.next_retry_at", 1)])
        await self.collection.create_index([("exam_id", 1), ("student_id", 1)])
        # TTL: entries expire after the retention window whatever their state
        await self.collection.create_index(
            "created_at", expireAfterSeconds=self.settings.QUEUE_RETENTION_DAYS * 24 * 3600
        )
