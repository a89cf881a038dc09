"""Submission payload validation shared by the queue and the scoring engine."""

import math
from typing import Any, List

from pydantic import ValidationError

from ..models import SubmissionPayload


def _present(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_submission(data: Any) -> List[str]:
    """Return every problem with a raw submission; an empty list means valid."""
    if not isinstance(data, dict):
        return ["Submission must be an object"]

    problems = []
    if not _present(data.get("exam_id")):
        problems.append("Missing exam ID")
    if not _present(data.get("student_id")):
        problems.append("Missing student ID")
    if not isinstance(data.get("answers"), dict):
        problems.append("Missing answers")

    time_taken = data.get("time_taken")
    if (
        isinstance(time_taken, bool)
        or not isinstance(time_taken, (int, float))
        or not math.isfinite(time_taken)
        or time_taken < 0
    ):
        problems.append("Invalid time taken")

    if not data.get("completed_at"):
        problems.append("Missing completion time")

    if not problems:
        try:
            SubmissionPayload.model_validate(data)
        except ValidationError as e:
            for err in e.errors():
                field = ".".join(str(part) for part in err["loc"])
                problems.append(f"Invalid {field}: {err['msg']}")
    return problems
