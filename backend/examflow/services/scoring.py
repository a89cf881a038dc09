"""
Scoring engine - turns a submission into an ExamResult.

This is the single scoring path: the interactive submit endpoint and the
batch processor both go through ``score_and_save``, so the same exam, rules
and answers always produce the same score and question analysis.

Expected failures (bad payload, unknown exam, attempt limit) come back as
ScoringError values. Unexpected exceptions are logged and also come back as
a retryable ScoringError; nothing is persisted for a failed pass.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from pymongo.errors import DuplicateKeyError

from ..models import (
    AnswerStatus,
    Exam,
    ExamResult,
    ExamStatistics,
    NegativeMarkingInfo,
    Question,
    QuestionAnalysis,
    ResolutionLevel,
    SubjectPerformance,
    SubmissionPayload,
)
from ..utils import new_id, safe_percentage, section_label, utcnow
from .answer_evaluation import AnswerEvaluator, Evaluation
from .rule_resolution import RuleResolver, RuleSet, tie_break_key
from .stores import ExamCatalog, ResultStore
from .validation import validate_submission

logger = logging.getLogger(__name__)

INVALID_SUBMISSION = "invalid_submission"
EXAM_NOT_FOUND = "exam_not_found"
MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
ATTEMPT_CONFLICT = "attempt_conflict"
INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class ScoringResult:
    result: ExamResult
    timings: Dict[str, float] = field(default_factory=dict)
    duplicate: bool = False


@dataclass(frozen=True)
class ScoringError:
    code: str
    message: str
    retryable: bool
    cause: Optional[BaseException] = None


ScoringOutcome = Union[ScoringResult, ScoringError]


class ScoringEngine:
    """Scores submissions against the exam's questions and marking rules."""

    def __init__(
        self,
        catalog: ExamCatalog,
        results: ResultStore,
        resolver: RuleResolver,
        evaluator: AnswerEvaluator,
        clock: Callable = utcnow,
    ):
        self.catalog = catalog
        self.results = results
        self.resolver = resolver
        self.evaluator = evaluator
        self.clock = clock

    # ============ PUBLIC API ============

    async def score(
        self,
        submission: Dict[str, Any],
        submission_id: Optional[str] = None,
        processed_by: str = "interactive",
        job_id: Optional[str] = None,
    ) -> ScoringOutcome:
        """Compute a result without persisting it."""
        started = time.perf_counter()

        problems = validate_submission(submission)
        if problems:
            return ScoringError(INVALID_SUBMISSION, ", ".join(problems), retryable=False)

        payload = SubmissionPayload.model_validate(submission)
        context = f"exam={payload.exam_id} student={payload.student_id} submission={submission_id}"

        try:
            loaded = await self.catalog.load(payload.exam_id)
            if loaded is None:
                return ScoringError(EXAM_NOT_FOUND, f"Exam {payload.exam_id} not found", retryable=False)
            exam, questions = loaded

            previous_attempts = await self.results.count_attempts(payload.exam_id, payload.student_id)
            if previous_attempts >= exam.reattempt:
                return ScoringError(
                    MAX_ATTEMPTS_EXCEEDED,
                    f"You have reached the maximum allowed attempts ({exam.reattempt}) for this exam.",
                    retryable=False,
                )

            rules_started = time.perf_counter()
            rule_set = await self.resolver.load_rule_set(exam)
            bulk_rules_load_ms = (time.perf_counter() - rules_started) * 1000

            questions_started = time.perf_counter()
            result = self._build_result(
                exam=exam,
                questions=questions,
                payload=payload,
                rule_set=rule_set,
                attempt_number=previous_attempts + 1,
                submission_id=submission_id or new_id("submission"),
                processed_by=processed_by,
                job_id=job_id,
            )
            question_processing_ms = (time.perf_counter() - questions_started) * 1000

        except Exception as e:
            logger.error(f"❌ Scoring failed ({context}): {e}", exc_info=True)
            return ScoringError(INTERNAL_ERROR, str(e) or type(e).__name__, retryable=True, cause=e)

        timings = {
            "bulk_rules_load_ms": round(bulk_rules_load_ms, 2),
            "question_processing_ms": round(question_processing_ms, 2),
            "scoring_ms": round((time.perf_counter() - started) * 1000, 2),
        }
        result.processing_metadata["timings"] = timings
        return ScoringResult(result, timings)

    async def score_and_save(
        self,
        submission: Dict[str, Any],
        submission_id: str,
        processed_by: str,
        job_id: Optional[str] = None,
    ) -> ScoringOutcome:
        """
        Score and persist exactly once per submission id.

        A submission that already has a result returns that result with
        ``duplicate=True`` instead of scoring again.
        """
        try:
            existing = await self.results.find_by_submission(submission_id)
        except Exception as e:
            logger.error(f"❌ Result lookup failed for submission {submission_id}: {e}", exc_info=True)
            return ScoringError(INTERNAL_ERROR, str(e) or type(e).__name__, retryable=True, cause=e)

        if existing:
            logger.info(f"Submission {submission_id} already scored as {existing['result_id']}")
            return ScoringResult(ExamResult.model_validate(existing), duplicate=True)

        outcome = await self.score(submission, submission_id, processed_by, job_id)
        if isinstance(outcome, ScoringError):
            return outcome

        try:
            await self.results.insert(outcome.result)
        except DuplicateKeyError as e:
            existing = await self.results.find_by_submission(submission_id)
            if existing:
                return ScoringResult(ExamResult.model_validate(existing), outcome.timings, duplicate=True)
            logger.warning(
                f"⚠️ Attempt {outcome.result.attempt_number} for exam {outcome.result.exam_id} / "
                f"student {outcome.result.student_id} was recorded concurrently"
            )
            return ScoringError(ATTEMPT_CONFLICT, "Attempt number already recorded", retryable=True, cause=e)
        except Exception as e:
            logger.error(f"❌ Failed to save result for submission {submission_id}: {e}", exc_info=True)
            return ScoringError(INTERNAL_ERROR, str(e) or type(e).__name__, retryable=True, cause=e)

        result = outcome.result
        logger.info(
            f"✅ Scored submission {submission_id}: {result.score:g}/{result.total_marks:g} "
            f"(exam {result.exam_id}, student {result.student_id}, attempt {result.attempt_number})"
        )
        return outcome

    # ============ COMPUTATION ============

    def _evaluate(self, user_answer: Any, question: Question, exam: Exam, rule) -> Evaluation:
        try:
            return self.evaluator.evaluate(user_answer, question, exam, rule)
        except Exception as e:
            logger.error(f"Evaluation failed for question {question.question_id}: {e}", exc_info=True)
            return Evaluation(AnswerStatus.UNATTEMPTED, 0.0, {"evaluation_type": "error", "error": str(e)})

    def _build_result(
        self,
        exam: Exam,
        questions: List[Question],
        payload: SubmissionPayload,
        rule_set: RuleSet,
        attempt_number: int,
        submission_id: str,
        processed_by: str,
        job_id: Optional[str],
    ) -> ExamResult:
        score = 0.0
        possible = 0.0
        counts: Counter = Counter()
        level_usage: Counter = Counter()
        subjects: Dict[str, SubjectPerformance] = {}
        analysis: List[QuestionAnalysis] = []

        for number, question in enumerate(questions, start=1):
            rule = self.resolver.resolve(exam, question, rule_set)
            user_answer = payload.answers.get(question.question_id)
            evaluation = self._evaluate(user_answer, question, exam, rule)

            score += evaluation.marks_delta
            possible += rule.positive_marks
            counts[evaluation.status] += 1
            level_usage[rule.level.value] += 1

            subject_name = (question.subject or "").strip() or "General"
            stats = subjects.setdefault(subject_name, SubjectPerformance(subject=subject_name))
            stats.total_questions += 1
            stats.total_marks += rule.positive_marks
            stats.marks += evaluation.marks_delta
            if evaluation.status is AnswerStatus.UNATTEMPTED:
                stats.unanswered += 1
            else:
                stats.attempted += 1
                if evaluation.status is AnswerStatus.INCORRECT:
                    stats.incorrect += 1
                else:
                    stats.correct += 1

            analysis.append(QuestionAnalysis(
                question_id=question.question_id,
                question_number=number,
                subject=subject_name,
                section=section_label(question.section, exam.section),
                question_type=question.question_type,
                status=evaluation.status,
                marks=evaluation.marks_delta,
                user_answer=user_answer,
                correct_answer=question.multiple_answer if question.is_multiple_answer else question.answer,
                positive_marks=rule.positive_marks,
                negative_marks=rule.negative_marks,
                rule_description=rule.description,
                resolution_level=rule.level,
                rule_source=rule.source,
                evaluation=evaluation.meta,
            ))

        for stats in subjects.values():
            stats.marks = round(stats.marks, 2)
            stats.accuracy = safe_percentage(stats.correct, stats.attempted)
            stats.percentage = safe_percentage(stats.marks, stats.total_marks)

        unattempted = counts[AnswerStatus.UNATTEMPTED]
        statistics = ExamStatistics(
            correct_answers=counts[AnswerStatus.CORRECT],
            incorrect_answers=counts[AnswerStatus.INCORRECT],
            partially_correct=counts[AnswerStatus.PARTIALLY_CORRECT],
            unattempted=unattempted,
            total_questions_attempted=len(questions) - unattempted,
            accuracy=safe_percentage(counts[AnswerStatus.CORRECT], len(questions)),
        )

        total_marks = exam.total_marks or payload.total_marks or possible
        now = self.clock()

        return ExamResult(
            result_id=new_id("result"),
            submission_id=submission_id,
            exam_id=exam.exam_id,
            student_id=payload.student_id,
            attempt_number=attempt_number,
            answers=payload.answers,
            visited_questions=payload.visited_questions,
            marked_questions=payload.marked_questions,
            warnings=payload.warnings,
            score=round(score, 2),
            total_marks=total_marks,
            time_taken=payload.time_taken,
            completed_at=payload.completed_at,
            question_analysis=analysis,
            statistics=statistics,
            subject_performance=list(subjects.values()),
            negative_marking_info=self._negative_marking_info(exam, rule_set, level_usage),
            processing_metadata={
                "processed_by": processed_by,
                "job_id": job_id,
                "rule_count": rule_set.size,
            },
            created_at=now,
        )

    @staticmethod
    def _negative_marking_info(exam: Exam, rule_set: RuleSet, level_usage: Counter) -> NegativeMarkingInfo:
        exam_wide = rule_set.by_level.get(ResolutionLevel.EXAM_WIDE, [])
        if exam_wide:
            rule = max(exam_wide, key=tie_break_key)
            return NegativeMarkingInfo(
                positive_marks=rule.positive_marks,
                negative_marks=abs(rule.negative_marks),
                rule_source="super_admin_default",
                description=rule.description or f"{exam.stream} exam-wide rule",
                level_usage=dict(level_usage),
            )

        negative = exam.negative_marks if exam.negative_marks is not None else 1
        return NegativeMarkingInfo(
            positive_marks=4,
            negative_marks=abs(negative),
            rule_source="exam_specific",
            description=f"Exam marking: +4/-{abs(negative):g}",
            level_usage=dict(level_usage),
        )
