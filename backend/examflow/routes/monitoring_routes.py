"""
Batch scaling monitoring routes.

Endpoints:
- GET /api/monitoring/batch-scaling?action=status|recommendations|tier-info|performance
"""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from ..services import ExamPipeline
from .queue_routes import verify_bearer

ACTIONS = ("status", "recommendations", "tier-info", "performance")


def create_monitoring_routes(pipeline: ExamPipeline) -> APIRouter:
    """Create monitoring routes bound to a pipeline."""

    router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])
    settings = pipeline.settings
    advisor = pipeline.advisor

    @router.get("/batch-scaling")
    async def batch_scaling(
        action: str = Query("status"),
        profile: Optional[str] = Query(None),
        authorization: Optional[str] = Header(None),
    ):
        """Capacity advisor view for operators."""
        verify_bearer(authorization, settings.admin_secret)
        if action not in ACTIONS:
            raise HTTPException(status_code=400, detail=f"Unknown action {action!r}, expected one of {list(ACTIONS)}")

        try:
            if action == "status":
                return {
                    "success": True,
                    "auto_scaling_enabled": settings.ENABLE_AUTO_SCALING,
                    "profile": settings.AUTO_SCALING_PROFILE,
                    "configured_batch_size": settings.EXAM_BATCH_SIZE,
                    "effective_batch_size": await pipeline.processor.resolve_batch_size(),
                    "recommendation": await advisor.recommendation(profile),
                }
            if action == "recommendations":
                return {
                    "success": True,
                    "recommendations": await advisor.all_recommendations(),
                    "pool_size": await advisor.recommend_pool_size(),
                }
            if action == "tier-info":
                return {"success": True, **(await advisor.tier_info())}

            return {
                "success": True,
                "average_processing_ms": await pipeline.queue.recent_average_processing_ms(),
                "queue_depth": await pipeline.queue.load(),
                "queue": await pipeline.queue.stats(),
            }

        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
