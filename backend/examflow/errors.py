"""Exceptions raised by the submission pipeline."""

from typing import List


class SubmissionValidationError(ValueError):
    """Submission payload is malformed. Never enqueued, never retried."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__(f"Invalid submission: {', '.join(self.problems)}")


class SubmissionLostError(RuntimeError):
    """Both the queue write and the emergency backup write failed."""

    def __init__(self, exam_id: str, student_id: str, cause: BaseException):
        self.exam_id = exam_id
        self.student_id = student_id
        self.cause = cause
        super().__init__(
            f"Submission for exam {exam_id} / student {student_id} could not be persisted: {cause}"
        )


class RetryTimeoutError(TimeoutError):
    """Overall retry budget elapsed before the operation succeeded."""

    def __init__(self, elapsed_seconds: float, attempts: int, last_error: BaseException = None):
        self.elapsed_seconds = elapsed_seconds
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation timed out after {elapsed_seconds:.2f}s ({attempts} attempts)"
        )
