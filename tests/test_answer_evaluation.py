import pytest

from examflow.models import (
    AnswerStatus,
    Exam,
    PartialMarkingRules,
    Question,
    QuestionType,
    ResolutionLevel,
    ResolvedRule,
    RuleSource,
)
from examflow.services.answer_evaluation import AnswerEvaluator, is_unattempted, option_set, parse_number
from examflow.services.evaluation_config import PERCENTAGE, SAFE_DEFAULT, EvaluationConfig, resolve_config


def _rule(question_type=QuestionType.MCQ, positive=4, negative=1, partial=False):
    return ResolvedRule(
        positive_marks=positive,
        negative_marks=negative,
        partial_marking_enabled=partial,
        partial_marking_rules=PartialMarkingRules() if partial else None,
        question_type=question_type,
        description="test rule",
        level=ResolutionLevel.TYPE_ONLY,
        source=RuleSource.DATABASE,
    )


JEE = Exam(exam_id="exam_1", stream="JEE")
MCQ = Question(question_id="q1", subject="Physics", answer="B")
NUMERICAL = Question(question_id="q2", subject="Mathematics", user_input_answer=True, answer="2")
MCMA = Question(question_id="q3", subject="Chemistry", is_multiple_answer=True, multiple_answer=["A", "B", "C", "D"])


@pytest.fixture
def evaluator():
    return AnswerEvaluator()


@pytest.mark.parametrize("answer", [None, "", "   ", [], ["", " "]])
def test_unattempted_answers_score_zero(evaluator, answer):
    for question, question_type in ((MCQ, QuestionType.MCQ), (NUMERICAL, QuestionType.NUMERICAL), (MCMA, QuestionType.MCMA)):
        evaluation = evaluator.evaluate(answer, question, JEE, _rule(question_type))
        assert evaluation.status == AnswerStatus.UNATTEMPTED
        assert evaluation.marks_delta == 0


def test_zero_is_an_attempt():
    assert not is_unattempted(0)
    assert not is_unattempted([0])


def test_mcq_is_case_and_whitespace_insensitive(evaluator):
    correct = evaluator.evaluate(" b ", MCQ, JEE, _rule())
    wrong = evaluator.evaluate("C", MCQ, JEE, _rule())

    assert (correct.status, correct.marks_delta) == (AnswerStatus.CORRECT, 4)
    assert correct.meta["evaluation_type"] == "mcq"
    assert (wrong.status, wrong.marks_delta) == (AnswerStatus.INCORRECT, -1)


def test_incorrect_without_penalty_is_zero(evaluator):
    evaluation = evaluator.evaluate("C", MCQ, JEE, _rule(negative=0))

    assert evaluation.status == AnswerStatus.INCORRECT
    assert evaluation.marks_delta == 0


def test_numerical_tolerance_by_stream_and_subject(evaluator):
    rule = _rule(QuestionType.NUMERICAL)

    # JEE mathematics: 0.001 absolute
    assert evaluator.evaluate("2.0005", NUMERICAL, JEE, rule).status == AnswerStatus.CORRECT
    assert evaluator.evaluate("2.01", NUMERICAL, JEE, rule).status == AnswerStatus.INCORRECT

    # JEE physics: 2 percent of the correct value
    physics = Question(question_id="q4", subject="Physics", user_input_answer=True, answer=9.8)
    assert evaluator.evaluate(9.99, physics, JEE, rule).status == AnswerStatus.CORRECT
    assert evaluator.evaluate(10.1, physics, JEE, rule).status == AnswerStatus.INCORRECT


def test_tolerance_boundary_is_inclusive(evaluator):
    question = Question(question_id="q5", user_input_answer=True, answer="1.2")
    exam = Exam(exam_id="exam_2", stream="Unknown")

    # 1.3 - 1.2 evaluates to 0.10000000000000009
    evaluation = evaluator.evaluate("1.3", question, exam, _rule(QuestionType.NUMERICAL))

    assert evaluation.status == AnswerStatus.CORRECT
    assert evaluation.meta["tolerance"] == SAFE_DEFAULT.tolerance


def test_zero_tolerance_requires_equal_values():
    evaluator = AnswerEvaluator(config_resolver=lambda stream, subject: EvaluationConfig(0))
    rule = _rule(QuestionType.NUMERICAL)

    assert evaluator.evaluate("2.000", NUMERICAL, JEE, rule).status == AnswerStatus.CORRECT
    assert evaluator.evaluate("2.0000001", NUMERICAL, JEE, rule).status == AnswerStatus.INCORRECT


def test_numeric_zero_answer_is_evaluated(evaluator):
    question = Question(question_id="q6", user_input_answer=True, answer="5")

    evaluation = evaluator.evaluate(0, question, JEE, _rule(QuestionType.NUMERICAL))

    assert evaluation.status == AnswerStatus.INCORRECT
    assert evaluation.marks_delta == -1


def test_non_numeric_answers_fall_back_to_text(evaluator):
    question = Question(question_id="q7", user_input_answer=True, answer="Hydrogen")

    evaluation = evaluator.evaluate("hydrogen ", question, JEE, _rule(QuestionType.NUMERICAL))

    assert evaluation.status == AnswerStatus.CORRECT
    assert evaluation.meta["evaluation_type"] == "string"


def test_config_failure_falls_back_to_string_comparison():
    def broken(stream, subject):
        raise RuntimeError("config store unavailable")

    evaluation = AnswerEvaluator(config_resolver=broken).evaluate("2", NUMERICAL, JEE, _rule(QuestionType.NUMERICAL))

    assert evaluation.status == AnswerStatus.CORRECT
    assert evaluation.meta["evaluation_type"] == "fallback_string"


def test_mcma_exact_match(evaluator):
    evaluation = evaluator.evaluate(["d", "C", "b", "A"], MCMA, JEE, _rule(QuestionType.MCMA, negative=2, partial=True))

    assert (evaluation.status, evaluation.marks_delta) == (AnswerStatus.CORRECT, 4)


def test_mcma_three_of_four_partial_credit(evaluator):
    evaluation = evaluator.evaluate(["A", "B", "C"], MCMA, JEE, _rule(QuestionType.MCMA, negative=2, partial=True))

    assert evaluation.status == AnswerStatus.PARTIALLY_CORRECT
    assert evaluation.marks_delta == 3
    assert evaluation.meta["partial_credit"] is True


def test_mcma_any_wrong_option_is_penalized(evaluator):
    evaluation = evaluator.evaluate(["A", "B", "E"], MCMA, JEE, _rule(QuestionType.MCMA, negative=2, partial=True))

    assert (evaluation.status, evaluation.marks_delta) == (AnswerStatus.INCORRECT, -2)
    assert evaluation.meta["wrong_selected"] == 1


def test_mcma_proportional_credit_without_partial_rules(evaluator):
    evaluation = evaluator.evaluate(["A", "B"], MCMA, JEE, _rule(QuestionType.MCMA, positive=5))

    # floor(2 / 4 * 5)
    assert evaluation.marks_delta == 2
    assert evaluation.status == AnswerStatus.PARTIALLY_CORRECT


def test_mcma_accepts_comma_separated_answer(evaluator):
    question = Question(question_id="q8", is_multiple_answer=True, multiple_answer=["A", "B"])

    evaluation = evaluator.evaluate("a, b", question, JEE, _rule(QuestionType.MCMA))

    assert evaluation.status == AnswerStatus.CORRECT


def test_parse_number_rejects_non_finite_and_garbage():
    assert parse_number("1e3") == 1000
    assert parse_number(".5") == 0.5
    assert parse_number("inf") is None
    assert parse_number("12abc") is None
    assert parse_number(True) is None


def test_option_set_normalizes_labels():
    assert option_set([" A", "b", ""]) == {"a", "b"}


def test_resolve_config_uses_subject_override_and_aliases():
    assert resolve_config("jee", "Phy").tolerance_type == PERCENTAGE
    assert resolve_config("CBSE", "maths").tolerance == 0.01
    assert resolve_config("NEET", None).tolerance == 0.05
    assert resolve_config(None, None) == SAFE_DEFAULT
