"""
Submission service - the entry point for finished exams.

Interactive path: score immediately, retrying transient failures.
Degraded path: when interactive scoring keeps failing (or QUEUE_ALL_SUBMISSIONS
is set) the submission is queued for the batch processor; if even the queue
write fails, an emergency backup entry is written. The student gets an
"accepted" response on every path unless the backup write fails too.
"""

import logging
import uuid
from typing import Any, Dict, Optional, Union

from ..config.settings import Settings
from ..errors import SubmissionValidationError
from ..models import ExamResult, QueueStatus, SubmissionContext
from .retry import EXAM_SUBMISSION, RetryPolicy
from .scoring import ScoringEngine, ScoringError, ScoringOutcome
from .stores import ResultStore
from .submission_queue import PROGRESS, SubmissionQueue, progress_for
from .validation import validate_submission

logger = logging.getLogger(__name__)

DEFAULT_ESTIMATE_SECONDS = 120


class RetryableScoringError(RuntimeError):
    """A retryable ScoringError raised so RetryPolicy can see it."""

    def __init__(self, error: ScoringError):
        self.error = error
        super().__init__(error.message)


def summarize_result(result: Union[ExamResult, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(result, dict):
        result = ExamResult.model_validate(result)
    return {
        "result_id": result.result_id,
        "exam_id": result.exam_id,
        "student_id": result.student_id,
        "attempt_number": result.attempt_number,
        "score": result.score,
        "total_marks": result.total_marks,
        "statistics": result.statistics.model_dump(),
        "subject_performance": [s.model_dump() for s in result.subject_performance],
        "negative_marking_info": result.negative_marking_info.model_dump(),
        "completed_at": result.completed_at,
    }


class SubmissionService:
    """Accepts submissions and answers status queries."""

    def __init__(
        self,
        engine: ScoringEngine,
        queue: SubmissionQueue,
        results: ResultStore,
        retry_policy: RetryPolicy,
        settings: Settings,
    ):
        self.engine = engine
        self.queue = queue
        self.results = results
        self.retry_policy = retry_policy
        self.settings = settings

    # ============ SUBMIT ============

    async def submit(
        self,
        submission: Dict[str, Any],
        context: Optional[SubmissionContext] = None,
    ) -> Dict[str, Any]:
        """
        Accept a finished exam.

        Returns either the scored result (mode "interactive"), a queued
        acknowledgment (mode "queued") or a rejection for business-rule
        failures such as the attempt limit.

        Raises:
            SubmissionValidationError: malformed payload, nothing stored
            SubmissionLostError: every write path failed
        """
        problems = validate_submission(submission)
        if problems:
            raise SubmissionValidationError(problems)

        context = context or SubmissionContext()
        submission_id = f"sub_{uuid.uuid4().hex}"

        if self.settings.QUEUE_ALL_SUBMISSIONS:
            return await self._queue(submission, context, submission_id)

        try:
            outcome = await self.retry_policy.execute(
                lambda: self._score_once(submission, submission_id),
                EXAM_SUBMISSION,
                label=f"submission {submission_id}",
            )
        except Exception as e:
            logger.warning(
                f"⚠️ Interactive scoring failed for exam {submission['exam_id']} / student "
                f"{submission['student_id']}, queueing instead: {e}"
            )
            return await self._queue(submission, context, submission_id)

        if isinstance(outcome, ScoringError):
            logger.info(
                f"Submission rejected for exam {submission['exam_id']} / student "
                f"{submission['student_id']}: {outcome.code}"
            )
            return {
                "success": False,
                "status": "rejected",
                "code": outcome.code,
                "message": outcome.message,
            }

        return {
            "success": True,
            "mode": "interactive",
            "submission_id": submission_id,
            "status": QueueStatus.COMPLETED.value,
            "duplicate": outcome.duplicate,
            "result": summarize_result(outcome.result),
        }

    async def _score_once(self, submission: Dict[str, Any], submission_id: str) -> ScoringOutcome:
        outcome = await self.engine.score_and_save(submission, submission_id, processed_by="interactive")
        if isinstance(outcome, ScoringError) and outcome.retryable:
            if outcome.cause is not None:
                raise outcome.cause
            raise RetryableScoringError(outcome)
        return outcome

    async def _queue(
        self,
        submission: Dict[str, Any],
        context: SubmissionContext,
        submission_id: str,
    ) -> Dict[str, Any]:
        try:
            queued_id = await self.queue.enqueue(
                submission, context, submission_id=submission_id, queued_by="submission_service"
            )
        except SubmissionValidationError:
            raise
        except Exception as e:
            logger.error(f"❌ Enqueue failed for exam {submission['exam_id']} / student {submission['student_id']}: {e}")
            queued_id = await self.queue.emergency_backup(submission, e, context, submission_id=submission_id)

        return {
            "success": True,
            "mode": "queued",
            "submission_id": queued_id,
            "status": QueueStatus.QUEUED.value,
            "estimated_processing_time": await self.estimate_wait_seconds(),
            "message": "Exam submitted successfully. Your results will be ready shortly.",
        }

    async def estimate_wait_seconds(self) -> int:
        """Rough wait: one scheduler interval per batch ahead of this submission."""
        try:
            depth = await self.queue.load()
        except Exception:
            return DEFAULT_ESTIMATE_SECONDS
        batches_ahead = depth // max(self.settings.EXAM_BATCH_SIZE, 1) + 1
        return batches_ahead * self.settings.WORKER_POLL_SECONDS

    # ============ STATUS ============

    async def status(self, submission_id: str) -> Optional[Dict[str, Any]]:
        """Current status and progress, plus the result summary once scored."""
        entry = await self.queue.get(submission_id)

        if entry is None:
            # Interactive submissions never touch the queue
            result = await self.results.find_by_submission(submission_id)
            if not result:
                return None
            stage, percentage, message = PROGRESS[QueueStatus.COMPLETED.value]
            return {
                "submission_id": submission_id,
                "status": QueueStatus.COMPLETED.value,
                "progress": {"stage": stage, "percentage": percentage, "message": message},
                "result": summarize_result(result),
            }

        response = {
            "submission_id": submission_id,
            "status": entry.status,
            "progress": progress_for(entry),
            "priority": entry.priority,
            "attempts": entry.processing.attempts,
            "max_attempts": entry.processing.max_attempts,
            "queued_at": entry.created_at,
            "next_retry_at": entry.processing.next_retry_at,
        }
        if entry.status == QueueStatus.COMPLETED.value and entry.exam_result_id:
            result = await self.results.find(entry.exam_result_id)
            if result:
                response["result"] = summarize_result(result)
        if entry.errors:
            response["errors"] = [{"attempt": e.attempt, "message": e.message} for e in entry.errors]
        return response

    async def retry_submission(self, submission_id: str) -> Optional[Dict[str, Any]]:
        entry = await self.queue.retry_failed(submission_id)
        if entry is None:
            return None
        return {
            "submission_id": entry.submission_id,
            "status": entry.status,
            "priority": entry.priority,
            "max_attempts": entry.processing.max_attempts,
        }
