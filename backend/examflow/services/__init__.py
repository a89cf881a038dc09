"""Services for scoring and processing exam submissions."""

from .answer_evaluation import AnswerEvaluator
from .batch_processor import BatchProcessor, CycleSummary
from .capacity import CapacityAdvisor, MongoCapacityProbe
from .pipeline import ExamPipeline
from .retry import RetryConfig, RetryPolicy
from .rule_resolution import RuleResolver
from .scoring import ScoringEngine, ScoringError, ScoringResult
from .submission import SubmissionService
from .submission_queue import SubmissionQueue

__all__ = [
    "AnswerEvaluator",
    "BatchProcessor",
    "CycleSummary",
    "CapacityAdvisor",
    "MongoCapacityProbe",
    "ExamPipeline",
    "RetryConfig",
    "RetryPolicy",
    "RuleResolver",
    "ScoringEngine",
    "ScoringError",
    "ScoringResult",
    "SubmissionService",
    "SubmissionQueue",
]
