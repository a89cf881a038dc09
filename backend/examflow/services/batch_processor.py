"""
Batch processor - one cron cycle over the submission queue.

``run_cycle`` leases a batch, scores every entry concurrently and records
each outcome back on the queue. It owns no timer: an external scheduler
(the cron endpoint or task_worker.py) calls it repeatedly. An empty queue
makes the cycle a no-op.
"""

import asyncio
import logging
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config.settings import Settings
from ..models import QueueEntry
from .capacity import CapacityAdvisor
from .scoring import ScoringEngine, ScoringError
from .submission_queue import SubmissionQueue

logger = logging.getLogger(__name__)

SLOW_CYCLE_RATIO = 0.9


@dataclass
class CycleSummary:
    processed: int
    succeeded: int
    failed: int
    cron_job_id: str
    processing_time_ms: int
    batch_size: int

    def as_response(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cronJobId": self.cron_job_id,
            "processingTimeMs": self.processing_time_ms,
            "batchSize": self.batch_size,
        }


class BatchProcessor:
    """Leases queued submissions and scores them with per-entry isolation."""

    def __init__(
        self,
        queue: SubmissionQueue,
        engine: ScoringEngine,
        settings: Settings,
        advisor: Optional[CapacityAdvisor] = None,
    ):
        self.queue = queue
        self.engine = engine
        self.settings = settings
        self.advisor = advisor
        self.worker_name = f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"

    async def resolve_batch_size(self, batch_size: Optional[int] = None) -> int:
        """Explicit size, else the advisor's recommendation when auto-scaling, else EXAM_BATCH_SIZE."""
        if batch_size:
            return batch_size
        if self.settings.ENABLE_AUTO_SCALING and self.advisor is not None:
            try:
                return await self.advisor.recommend_batch_size(self.settings.AUTO_SCALING_PROFILE)
            except Exception as e:
                logger.warning(f"⚠️ Auto-scaling unavailable, using EXAM_BATCH_SIZE: {e}")
        return self.settings.EXAM_BATCH_SIZE

    async def run_cycle(self, batch_size: Optional[int] = None, job_id: Optional[str] = None) -> CycleSummary:
        job_id = job_id or f"cron_{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()
        size = await self.resolve_batch_size(batch_size)
        worker_id = f"{self.worker_name}:{job_id}"

        entries = await self.queue.lease_batch(size, worker_id)
        if not entries:
            logger.debug(f"Cycle {job_id}: queue empty")
            return CycleSummary(0, 0, 0, job_id, int((time.perf_counter() - started) * 1000), size)

        logger.info(f"🚀 Cycle {job_id}: processing {len(entries)} submission(s) (batch size {size})")

        semaphore = asyncio.Semaphore(max(self.settings.BATCH_CONCURRENCY, 1))
        outcomes = await asyncio.gather(
            *(self._process_entry(entry, job_id, semaphore) for entry in entries),
            return_exceptions=True,
        )

        succeeded = 0
        for entry, outcome in zip(entries, outcomes):
            if outcome is True:
                succeeded += 1
            elif isinstance(outcome, BaseException):
                # Queue write failed; the lease expires via recover_stale
                logger.error(
                    f"❌ Cycle {job_id}: could not record outcome for {entry.submission_id}: {outcome}",
                    exc_info=outcome,
                )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        ceiling_ms = self.settings.CRON_MAX_PROCESSING_TIME_MS
        if elapsed_ms > ceiling_ms * SLOW_CYCLE_RATIO:
            logger.warning(
                f"⚠️ Cycle {job_id} took {elapsed_ms}ms, close to the {ceiling_ms}ms ceiling. "
                f"Consider a smaller batch size."
            )

        summary = CycleSummary(
            processed=len(entries),
            succeeded=succeeded,
            failed=len(entries) - succeeded,
            cron_job_id=job_id,
            processing_time_ms=elapsed_ms,
            batch_size=size,
        )
        logger.info(
            f"✅ Cycle {job_id} done: {summary.succeeded}/{summary.processed} succeeded in {elapsed_ms}ms"
        )
        return summary

    async def _process_entry(self, entry: QueueEntry, job_id: str, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                outcome = await self.engine.score_and_save(
                    entry.submission_data,
                    entry.submission_id,
                    processed_by="batch",
                    job_id=job_id,
                )
            except Exception as e:
                logger.error(f"❌ Unexpected error scoring {entry.submission_id}: {e}", exc_info=True)
                await self.queue.mark_failed(entry, e, should_retry=True, code="unexpected_error")
                return False

            if isinstance(outcome, ScoringError):
                await self.queue.mark_failed(entry, outcome.message, should_retry=outcome.retryable, code=outcome.code)
                return False

            result = outcome.result
            return await self.queue.mark_completed(
                entry,
                result.result_id,
                {
                    **outcome.timings,
                    "score": result.score,
                    "question_count": len(result.question_analysis),
                    "duplicate": outcome.duplicate,
                },
            )
