# services/attempts/scorer.py
"""Scoring utilities for the attempt engine.

Functions:
- round_half_up: standard 2-decimal rounding used for every percentage.
- grade_for: letter grade and performance level for a percentage.
- evaluate_questions: run the validator over every question of the test.
- score_attempt: aggregate the per-question verdicts into a `Score`.
- compare_scores: percentage change against an earlier attempt.

Everything here is a pure function of its inputs; re-scoring after manual
grades is just another call with the updated `manual_grades`.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from packages.schemas.attempt import (
    AnswerKey,
    Score,
    ScoreComparison,
    SectionQuestion,
    TestAttempt,
    ValidationResult,
    Verdict,
)
from .errors import UnknownQuestion
from .validator import validate

# (min percentage, grade, performance level), checked top-down
GRADE_BANDS: Tuple[Tuple[float, str, str], ...] = (
    (90.0, "A", "excellent"),
    (80.0, "B", "good"),
    (70.0, "C", "average"),
    (60.0, "D", "below_average"),
)


def round_half_up(value: float, places: int = 2) -> float:
    """Round like a person would (2.675 -> 2.68), unlike binary `round`."""
    q = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def grade_for(percentage: float) -> Tuple[str, str]:
    """Return (letter grade, performance level) for a percentage."""
    for floor, grade, level in GRADE_BANDS:
        if percentage >= floor:
            return grade, level
    return "F", "poor"


def evaluate_questions(
    attempt: TestAttempt,
    questions: Sequence[SectionQuestion],
    answer_keys: Mapping[str, AnswerKey],
) -> List[Tuple[SectionQuestion, ValidationResult]]:
    """Validate every question of the test, answered or not.

    The section weight overrides the key's `full_points`. Manual grades in
    `attempt.manual_grades` turn a pending_review verdict into a graded one.

    Raises:
        UnknownQuestion: if a question of the test has no answer key.
    """
    out: List[Tuple[SectionQuestion, ValidationResult]] = []
    for q in questions:
        key = answer_keys.get(q.question_id)
        if key is None:
            raise UnknownQuestion(q.question_id, attempt.test_id)
        weighted = key.model_copy(update={"full_points": q.points})
        result = validate(attempt.answers.get(q.question_id), weighted)
        if result.verdict is Verdict.PENDING_REVIEW and q.question_id in attempt.manual_grades:
            points = float(attempt.manual_grades[q.question_id])
            result = ValidationResult(
                question_id=q.question_id,
                verdict=Verdict.CORRECT if points > 0 else Verdict.INCORRECT,
                points_awarded=points,
            )
        out.append((q, result))
    return out


def score_attempt(
    attempt: TestAttempt,
    questions: Sequence[SectionQuestion],
    answer_keys: Mapping[str, AnswerKey],
    passing_percentage: float,
) -> Score:
    """Aggregate per-question results into a `Score` model (percentage in [0, 100]).

    Unanswered questions count as incorrect. Questions still pending review add
    their weight to `max_points` but nothing to `total_points`, and mark the
    score provisional.
    """
    total = 0.0
    max_points = 0.0
    pending: List[str] = []
    for q, result in evaluate_questions(attempt, questions, answer_keys):
        max_points += q.points
        if result.verdict is Verdict.PENDING_REVIEW:
            pending.append(q.question_id)
            continue
        total += result.points_awarded or 0.0

    if max_points <= 0:
        percentage = 0.0
        passed = False
    else:
        percentage = round_half_up(total / max_points * 100.0)
        passed = percentage >= passing_percentage

    grade, level = grade_for(percentage)
    return Score(
        total_points=round_half_up(total),
        max_points=round_half_up(max_points),
        percentage=percentage,
        passed=passed,
        passing_percentage=float(passing_percentage),
        provisional=bool(pending),
        pending_question_ids=pending,
        grade=grade,
        performance_level=level,
    )


def compare_scores(current: TestAttempt, previous: Optional[TestAttempt]) -> ScoreComparison:
    """Percentage-point change of `current` over `previous` (both completed)."""
    if previous is None or previous.score is None or current.score is None:
        return ScoreComparison(attempt_id=current.attempt_id)
    improvement = round_half_up(current.score.percentage - previous.score.percentage)
    return ScoreComparison(
        attempt_id=current.attempt_id,
        previous_attempt_id=previous.attempt_id,
        improvement=improvement,
        is_improving=improvement > 0,
    )


def weights_by_question(questions: Sequence[SectionQuestion]) -> Dict[str, float]:
    return {q.question_id: q.points for q in questions}
