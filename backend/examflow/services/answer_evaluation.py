"""
Answer evaluation - compares one student answer against the answer key.

Outcomes per question type:
- MCQ / Numerical: tolerance-aware numeric comparison when both sides are
  numbers, otherwise trimmed case-insensitive string equality.
- MCMA: set comparison with partial credit for a proper subset of the
  correct options.
- Any type: a missing or blank answer is unattempted and scores zero.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set, Tuple

from ..models import AnswerStatus, Exam, Question, QuestionType, ResolvedRule
from .evaluation_config import ABSOLUTE, EvaluationConfig, resolve_config

logger = logging.getLogger(__name__)

NUMBER_PATTERN = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")

# Absorbs binary representation error, e.g. |1.12 - 1.1| = 0.02000000000000001
FLOAT_SLACK = 1e-9


@dataclass(frozen=True)
class Evaluation:
    status: AnswerStatus
    marks_delta: float
    meta: Dict[str, Any] = field(default_factory=dict)


# ============ NORMALIZATION ============

def is_unattempted(answer: Any) -> bool:
    """None, blank strings and empty collections. Numeric zero is an attempt."""
    if answer is None:
        return True
    if isinstance(answer, str):
        return not answer.strip()
    if isinstance(answer, (list, tuple, set, frozenset)):
        return all(is_unattempted(item) for item in answer)
    return False


def parse_number(value: Any) -> Optional[float]:
    """Finite float for numeric input or plain decimal/scientific text, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not NUMBER_PATTERN.match(text):
            return None
        number = float(text)
    return number if math.isfinite(number) else None


def normalize_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def option_set(value: Any) -> Set[str]:
    """Lowercase-trimmed option labels. A comma separated string counts as a list."""
    if value is None:
        return set()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        items = [value]
    return {normalize_text(item) for item in items if normalize_text(item)}


def within_tolerance(user_value: float, correct_value: float, config: EvaluationConfig) -> bool:
    if user_value == correct_value:
        return True
    if config.tolerance == 0:
        return False

    if config.tolerance_type == ABSOLUTE:
        allowed = config.tolerance
    else:
        allowed = abs(correct_value) * (config.tolerance / 100)

    return abs(user_value - correct_value) <= allowed + FLOAT_SLACK


def compare_answers(user_answer: Any, correct_answer: Any, config: EvaluationConfig) -> Tuple[bool, Dict[str, Any]]:
    """Numeric comparison when both sides parse as numbers, string equality otherwise."""
    user_value = parse_number(user_answer)
    correct_value = parse_number(correct_answer)

    if user_value is not None and correct_value is not None:
        return within_tolerance(user_value, correct_value, config), {
            "evaluation_type": "numerical",
            "user_value": user_value,
            "correct_value": correct_value,
            "difference": abs(user_value - correct_value),
            **config.as_dict(),
        }

    return normalize_text(user_answer) == normalize_text(correct_answer), {"evaluation_type": "string"}


def _penalty(rule: ResolvedRule) -> float:
    return -rule.negative_marks if rule.negative_marks else 0.0


# ============ EVALUATOR ============

class AnswerEvaluator:
    """Scores a single answer under an already resolved marking rule."""

    def __init__(self, config_resolver: Callable[[Optional[str], Optional[str]], EvaluationConfig] = resolve_config):
        self.config_resolver = config_resolver

    def evaluate(self, user_answer: Any, question: Question, exam: Exam, rule: ResolvedRule) -> Evaluation:
        if is_unattempted(user_answer):
            return Evaluation(AnswerStatus.UNATTEMPTED, 0.0, {"evaluation_type": "unattempted"})

        question_type = question.question_type
        if question_type is QuestionType.MCMA:
            return self._evaluate_multiple(user_answer, question, rule)
        if question_type is QuestionType.MCQ or question_type is QuestionType.NUMERICAL:
            return self._evaluate_single(user_answer, question, exam, rule)
        raise ValueError(f"Unhandled question type: {question_type}")

    def _evaluate_single(self, user_answer: Any, question: Question, exam: Exam, rule: ResolvedRule) -> Evaluation:
        correct_answer = question.answer

        try:
            config = self.config_resolver(exam.stream, question.subject)
        except Exception as e:
            logger.warning(f"Evaluation config failed for question {question.question_id}: {e}")
            matched = normalize_text(user_answer) == normalize_text(correct_answer)
            meta = {"evaluation_type": "fallback_string", "config_error": str(e)}
        else:
            try:
                matched, meta = compare_answers(user_answer, correct_answer, config)
            except Exception as e:
                logger.warning(f"Numerical evaluation failed for question {question.question_id}: {e}")
                matched = normalize_text(user_answer) == normalize_text(correct_answer)
                meta = {"evaluation_type": "error", "error": str(e)}

        if question.question_type is QuestionType.MCQ and meta["evaluation_type"] == "string":
            meta["evaluation_type"] = "mcq"

        if matched:
            return Evaluation(AnswerStatus.CORRECT, rule.positive_marks, meta)
        return Evaluation(AnswerStatus.INCORRECT, _penalty(rule), meta)

    def _evaluate_multiple(self, user_answer: Any, question: Question, rule: ResolvedRule) -> Evaluation:
        try:
            selected = option_set(user_answer)
            correct = option_set(question.multiple_answer or question.answer)
            if not selected:
                return Evaluation(AnswerStatus.UNATTEMPTED, 0.0, {"evaluation_type": "unattempted"})

            wrong = selected - correct
            right = selected & correct
            details = {
                "evaluation_type": "mcma",
                "total_correct_options": len(correct),
                "correct_selected": len(right),
                "wrong_selected": len(wrong),
                "partial_credit": False,
            }

            if wrong:
                return Evaluation(AnswerStatus.INCORRECT, _penalty(rule), details)
            if selected == correct:
                return Evaluation(AnswerStatus.CORRECT, rule.positive_marks, details)

            details["partial_credit"] = True
            return Evaluation(
                AnswerStatus.PARTIALLY_CORRECT,
                partial_credit(len(right), len(correct), rule),
                details,
            )

        except Exception as e:
            logger.warning(f"MCMA evaluation failed for question {question.question_id}: {e}")
            return Evaluation(AnswerStatus.UNATTEMPTED, 0.0, {"evaluation_type": "error", "error": str(e)})


def partial_credit(selected: int, total: int, rule: ResolvedRule) -> float:
    """Marks for selecting ``selected`` of ``total`` correct options and nothing wrong."""
    tiers = rule.partial_marking_rules
    if rule.partial_marking_enabled and tiers is not None:
        if total >= 4 and selected == 3:
            return float(tiers.three_out_of_four)
        if total >= 3 and selected == 2:
            return float(tiers.two_out_of_three)
        if total >= 2 and selected == 1:
            return float(tiers.one_out_of_two)
    return float(math.floor(selected / total * rule.positive_marks))
