"""
ExamPipeline - wires the submission pipeline together.

One instance per process, built from a settings object and a Motor database
and handed to the routes and the worker. ``start`` creates indexes,
``stop`` drops in-memory caches.
"""

import logging
from typing import Any, Callable, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from ..config.settings import Settings
from ..utils import utcnow
from .answer_evaluation import AnswerEvaluator
from .batch_processor import BatchProcessor
from .capacity import CapacityAdvisor, MongoCapacityProbe
from .retry import RetryPolicy
from .rule_resolution import RuleResolver
from .scoring import ScoringEngine
from .stores import ExamCatalog, MarkingRuleStore, ResultStore
from .submission import SubmissionService
from .submission_queue import SubmissionQueue

logger = logging.getLogger(__name__)


class ExamPipeline:
    """Service container for the submission pipeline."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settings: Settings,
        clock: Callable = utcnow,
        capacity_probe: Optional[MongoCapacityProbe] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.db = db
        self.settings = settings

        self.catalog = ExamCatalog(db)
        self.rule_store = MarkingRuleStore(db)
        self.results = ResultStore(db)

        self.resolver = RuleResolver(self.rule_store, settings)
        self.evaluator = AnswerEvaluator()
        self.engine = ScoringEngine(self.catalog, self.results, self.resolver, self.evaluator, clock=clock)

        self.queue = SubmissionQueue(db, settings, clock=clock)
        self.advisor = CapacityAdvisor(capacity_probe or MongoCapacityProbe(db), self.queue, settings)
        self.processor = BatchProcessor(self.queue, self.engine, settings, advisor=self.advisor)

        self.retry_policy = retry_policy or RetryPolicy()
        self.submissions = SubmissionService(self.engine, self.queue, self.results, self.retry_policy, settings)
        self.started = False

    async def start(self):
        await self._create_indexes()
        self.started = True
        logger.info("✅ Submission pipeline started")

    async def stop(self):
        self.resolver.clear_caches()
        self.advisor.clear_cache()
        self.started = False
        logger.info("🛑 Submission pipeline stopped")

    async def _create_indexes(self):
        """Create database indexes for the pipeline's collections."""
        try:
            await self.catalog.create_indexes()
            await self.rule_store.create_indexes()
            await self.results.create_indexes()
            await self.queue.create_indexes()
        except Exception as e:
            # Existing indexes with other options must not block startup
            logger.warning(f"Index creation warning: {e}")

    async def housekeeping(self) -> Dict[str, Any]:
        """Release stale leases and purge old completed entries."""
        recovered = await self.queue.recover_stale()
        purged = await self.queue.purge_completed()
        expired_rules = self.resolver.rule_cache.cleanup_expired()
        return {"recovered": recovered, "purged": purged, "expired_rule_cache_entries": expired_rules}
