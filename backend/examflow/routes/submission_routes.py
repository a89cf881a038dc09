"""
Exam submission routes.

Endpoints:
- POST /api/exam/submit
- GET /api/exam/submission-status
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ..errors import SubmissionLostError, SubmissionValidationError
from ..models import SubmissionContext
from ..services import ExamPipeline
from ..services.scoring import EXAM_NOT_FOUND, MAX_ATTEMPTS_EXCEEDED

logger = logging.getLogger(__name__)

REJECTION_STATUS = {
    MAX_ATTEMPTS_EXCEEDED: 409,
    EXAM_NOT_FOUND: 404,
}


class SubmitRequest(BaseModel):
    submission: Dict[str, Any]
    context: SubmissionContext = Field(default_factory=SubmissionContext)


def create_submission_routes(pipeline: ExamPipeline) -> APIRouter:
    """Create submission routes bound to a pipeline."""

    router = APIRouter(prefix="/api/exam", tags=["submissions"])
    service = pipeline.submissions

    @router.post("/submit")
    async def submit_exam(request: SubmitRequest):
        """
        Submit a finished exam.

        Returns the scored result when it could be computed right away,
        otherwise a queued acknowledgment with an estimated wait.
        """
        try:
            response = await service.submit(request.submission, request.context)

            if not response["success"]:
                raise HTTPException(
                    status_code=REJECTION_STATUS.get(response["code"], 400),
                    detail={"code": response["code"], "message": response["message"]},
                )
            return response

        except SubmissionValidationError as e:
            raise HTTPException(status_code=400, detail={"message": "Invalid submission", "errors": e.problems})
        except SubmissionLostError:
            raise HTTPException(
                status_code=503,
                detail="Your submission could not be saved. Please submit again.",
            )
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Submit failed: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/submission-status")
    async def submission_status(submission_id: str = Query(...)):
        """Get submission status and progress."""
        try:
            status = await service.status(submission_id)
            if status is None:
                raise HTTPException(status_code=404, detail="Submission not found")
            return {"success": True, **status}

        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
