"""Tests for score aggregation, grading bands and comparisons."""

import pytest

from conftest import T0, build_catalog
from packages.schemas.attempt import Answer, AttemptStatus, Score, SectionQuestion, TestAttempt
from services.attempts.errors import UnknownQuestion
from services.attempts.scorer import compare_scores, grade_for, round_half_up, score_attempt


def _attempt(test_id: str, answers: dict, **extra) -> TestAttempt:
    catalog = build_catalog()
    return TestAttempt(
        attempt_id="a1",
        test_id=test_id,
        student_id="s1",
        started_at=T0,
        answers={
            qid: Answer(question_id=qid, type=catalog.get_answer_key(qid).type, content=c, submitted_at=T0)
            for qid, c in answers.items()
        },
        **extra,
    )


def _score(attempt: TestAttempt, passing: float = 60.0) -> Score:
    catalog = build_catalog()
    test = catalog.get_test(attempt.test_id)
    keys = {q.question_id: catalog.get_answer_key(q.question_id) for q in test.questions()}
    return score_attempt(attempt, test.questions(), keys, passing)


def test_three_of_five_correct_passes_at_sixty() -> None:
    a = _attempt("mcq-5", {"mc1": "a", "mc2": "a", "mc3": "a", "mc4": "b", "mc5": "c"})
    s = _score(a)
    assert (s.total_points, s.max_points, s.percentage, s.passed) == (30, 50, 60.0, True)
    assert s.provisional is False
    assert s.grade == "D"


def test_unanswered_questions_count_as_wrong() -> None:
    a = _attempt("mcq-5", {"mc1": "a", "mc2": "a", "mc3": "a"})
    s = _score(a)
    assert s.total_points == 30
    assert s.max_points == 50
    assert s.percentage == 60.0


def test_pending_essay_makes_score_provisional() -> None:
    a = _attempt("with-essay", {"mc1": "a", "mc2": "a", "mc3": "a", "mc4": "a", "essay1": "text"})
    s = _score(a)
    assert s.provisional is True
    assert s.pending_question_ids == ["essay1"]
    assert s.percentage == 80.0
    assert s.max_points == 50


def test_manual_grade_resolves_pending_essay() -> None:
    a = _attempt(
        "with-essay",
        {"mc1": "a", "mc2": "a", "mc3": "a", "mc4": "a", "essay1": "text"},
        status=AttemptStatus.COMPLETED,
        manual_grades={"essay1": 7.5},
    )
    s = _score(a)
    assert s.provisional is False
    assert s.total_points == 47.5
    assert s.percentage == 95.0
    assert s.grade == "A"


def test_no_graded_questions_short_circuits() -> None:
    s = _score(_attempt("empty", {}))
    assert (s.max_points, s.percentage, s.passed) == (0, 0.0, False)


def test_missing_answer_key_is_unknown_question() -> None:
    a = _attempt("mcq-5", {})
    with pytest.raises(UnknownQuestion):
        score_attempt(a, [SectionQuestion(question_id="ghost", points=1)], {}, 60)


def test_section_weight_overrides_key_points() -> None:
    catalog = build_catalog()
    a = _attempt("mcq-5", {"mc1": "a"})
    questions = [SectionQuestion(question_id="mc1", points=3), SectionQuestion(question_id="mc2", points=1)]
    keys = {q.question_id: catalog.get_answer_key(q.question_id) for q in questions}
    s = score_attempt(a, questions, keys, 50)
    assert (s.total_points, s.max_points, s.percentage) == (3, 4, 75.0)


def test_percentage_rounds_half_up() -> None:
    assert round_half_up(2.675) == 2.68
    assert round_half_up(66.666666) == 66.67
    assert round_half_up(1 / 3 * 100) == 33.33


@pytest.mark.parametrize(
    "pct,grade,level",
    [(95, "A", "excellent"), (80, "B", "good"), (79.99, "C", "average"), (60, "D", "below_average"), (10, "F", "poor")],
)
def test_grade_bands(pct: float, grade: str, level: str) -> None:
    assert grade_for(pct) == (grade, level)


def test_compare_scores() -> None:
    base = dict(total_points=0, max_points=10, passed=False)
    prev = _attempt("mcq-5", {}).model_copy(update={"attempt_id": "old", "score": Score(percentage=40, **base)})
    cur = _attempt("mcq-5", {}).model_copy(update={"score": Score(percentage=70, **base)})
    cmp = compare_scores(cur, prev)
    assert cmp.previous_attempt_id == "old"
    assert cmp.improvement == 30
    assert cmp.is_improving is True
    first = compare_scores(cur, None)
    assert first.improvement == 0 and first.previous_attempt_id is None
