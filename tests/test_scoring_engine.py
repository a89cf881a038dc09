from pymongo.errors import ConnectionFailure

from examflow.models import AnswerStatus
from examflow.services.scoring import (
    EXAM_NOT_FOUND,
    INTERNAL_ERROR,
    INVALID_SUBMISSION,
    MAX_ATTEMPTS_EXCEEDED,
    ScoringError,
    ScoringResult,
)


async def test_scores_mixed_paper_end_to_end(pipeline, seed_exam, make_submission):
    await seed_exam()

    outcome = await pipeline.engine.score(make_submission(), "sub_1")

    assert isinstance(outcome, ScoringResult)
    result = outcome.result
    # +4 correct MCQ, -1 wrong MCQ, +3 for 3 of 4 MCMA options, 0 unanswered numerical
    assert result.score == 6
    assert result.total_marks == 16
    assert result.attempt_number == 1
    assert [qa.status for qa in result.question_analysis] == [
        AnswerStatus.CORRECT.value,
        AnswerStatus.INCORRECT.value,
        AnswerStatus.PARTIALLY_CORRECT.value,
        AnswerStatus.UNATTEMPTED.value,
    ]
    assert [qa.question_number for qa in result.question_analysis] == [1, 2, 3, 4]
    assert result.question_analysis[0].section == "Section A"

    stats = result.statistics
    assert (stats.correct_answers, stats.incorrect_answers, stats.partially_correct, stats.unattempted) == (1, 1, 1, 1)
    assert stats.total_questions_attempted == 3
    assert stats.accuracy == 25.0

    by_subject = {s.subject: s for s in result.subject_performance}
    assert by_subject["Physics"].total_questions == 2
    assert by_subject["Physics"].unanswered == 1
    assert by_subject["Physics"].percentage == 50.0
    assert by_subject["Chemistry"].marks == -1
    # Partial credit counts as correct in per-subject numbers
    assert by_subject["Mathematics"].correct == 1

    assert result.negative_marking_info.rule_source == "exam_specific"
    assert result.processing_metadata["processed_by"] == "interactive"
    assert set(outcome.timings) == {"bulk_rules_load_ms", "question_processing_ms", "scoring_ms"}


async def test_database_rules_drive_marks(pipeline, seed_exam, seed_rule, make_submission):
    await seed_exam()
    await seed_rule(positive_marks=2, negative_marks=0, description="flat marking")

    outcome = await pipeline.engine.score(make_submission(), "sub_1")

    # q1 +2, q2 0, q3 floor(3/4 * 2) = 1
    assert outcome.result.score == 3
    assert outcome.result.negative_marking_info.rule_source == "super_admin_default"
    assert outcome.result.negative_marking_info.level_usage == {"exam_wide": 4}


async def test_exam_total_marks_take_precedence(pipeline, seed_exam, make_submission):
    await seed_exam(total_marks=300)

    outcome = await pipeline.engine.score(make_submission(total_marks=120), "sub_1")

    assert outcome.result.total_marks == 300


async def test_scoring_is_deterministic(pipeline, seed_exam, make_submission):
    await seed_exam()
    submission = make_submission()

    first = await pipeline.engine.score(submission, "sub_1")
    pipeline.resolver.clear_caches()
    second = await pipeline.engine.score(submission, "sub_1")

    assert first.result.score == second.result.score
    assert [qa.model_dump() for qa in first.result.question_analysis] == [
        qa.model_dump() for qa in second.result.question_analysis
    ]


async def test_invalid_submission_is_rejected(pipeline):
    outcome = await pipeline.engine.score({"exam_id": "exam_jee", "answers": {}}, "sub_1")

    assert isinstance(outcome, ScoringError)
    assert outcome.code == INVALID_SUBMISSION
    assert not outcome.retryable
    assert "Missing student ID" in outcome.message


async def test_unknown_exam(pipeline, make_submission):
    outcome = await pipeline.engine.score(make_submission(exam_id="missing"), "sub_1")

    assert outcome.code == EXAM_NOT_FOUND
    assert not outcome.retryable


async def test_attempt_limit(pipeline, seed_exam, make_submission):
    await seed_exam(reattempt=2)

    first = await pipeline.engine.score_and_save(make_submission(), "sub_1", processed_by="interactive")
    second = await pipeline.engine.score_and_save(make_submission(), "sub_2", processed_by="interactive")
    third = await pipeline.engine.score_and_save(make_submission(), "sub_3", processed_by="interactive")

    assert first.result.attempt_number == 1
    assert second.result.attempt_number == 2
    assert third.code == MAX_ATTEMPTS_EXCEEDED
    assert "(2)" in third.message
    assert not third.retryable


async def test_same_submission_is_scored_once(pipeline, db, seed_exam, make_submission):
    await seed_exam()
    submission = make_submission()

    first = await pipeline.engine.score_and_save(submission, "sub_1", processed_by="interactive")
    again = await pipeline.engine.score_and_save(submission, "sub_1", processed_by="batch")

    assert not first.duplicate
    assert again.duplicate
    assert again.result.result_id == first.result.result_id
    assert await db.exam_results.count_documents({"submission_id": "sub_1"}) == 1


async def test_rule_store_failure_is_retryable(pipeline, seed_exam, make_submission, monkeypatch):
    await seed_exam()

    async def unavailable(stream):
        raise ConnectionFailure("rule store unreachable")

    monkeypatch.setattr(pipeline.rule_store, "active_rules", unavailable)

    outcome = await pipeline.engine.score_and_save(make_submission(), "sub_1", processed_by="batch")

    assert outcome.code == INTERNAL_ERROR
    assert outcome.retryable
    assert isinstance(outcome.cause, ConnectionFailure)
    assert await pipeline.results.find_by_submission("sub_1") is None
