"""
Queue processing and administration routes.

Endpoints:
- GET|POST /api/cron/process-submissions   (Bearer CRON_SECRET)
- GET /api/admin/queue-stats                (Bearer ADMIN_SECRET)
- POST /api/admin/retry-submission          (Bearer ADMIN_SECRET)
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query
from pydantic import BaseModel

from ..services import ExamPipeline

logger = logging.getLogger(__name__)


class RetryRequest(BaseModel):
    submission_id: str


def verify_bearer(authorization: Optional[str], secret: Optional[str]):
    """Reject the request unless it carries ``Bearer <secret>``."""
    if not secret:
        logger.error("Shared secret not configured; refusing request")
        raise HTTPException(status_code=500, detail="Server misconfiguration")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        logger.warning("⚠️ Unauthorized request rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_queue_routes(pipeline: ExamPipeline) -> APIRouter:
    """Create cron and admin queue routes bound to a pipeline."""

    router = APIRouter(prefix="/api", tags=["queue"])
    settings = pipeline.settings

    async def _process(authorization: Optional[str], batch_size: Optional[int]):
        verify_bearer(authorization, settings.CRON_SECRET)
        try:
            summary = await pipeline.processor.run_cycle(batch_size=batch_size)
            return {"success": True, **summary.as_response()}
        except Exception as e:
            logger.error(f"❌ Cron processing failed: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/cron/process-submissions")
    async def process_submissions(
        authorization: Optional[str] = Header(None),
        batch_size: Optional[int] = Query(None, ge=1),
    ):
        """Run one batch cycle over the submission queue."""
        return await _process(authorization, batch_size)

    @router.post("/cron/process-submissions")
    async def process_submissions_post(
        authorization: Optional[str] = Header(None),
        batch_size: Optional[int] = Query(None, ge=1),
    ):
        return await _process(authorization, batch_size)

    @router.get("/admin/queue-stats")
    async def queue_stats(authorization: Optional[str] = Header(None)):
        """Queue counts, wait times, recent failures and rule resolver metrics."""
        verify_bearer(authorization, settings.admin_secret)
        try:
            return {
                "success": True,
                "stats": await pipeline.queue.stats(),
                "rule_resolution": pipeline.resolver.metrics(),
            }
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/admin/retry-submission")
    async def retry_submission(request: RetryRequest, authorization: Optional[str] = Header(None)):
        """Put a failed submission back in the queue."""
        verify_bearer(authorization, settings.admin_secret)
        try:
            retried = await pipeline.submissions.retry_submission(request.submission_id)
            if retried is None:
                raise HTTPException(status_code=404, detail="No failed submission with that id")
            return {"success": True, **retried}

        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
