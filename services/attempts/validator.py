# services/attempts/validator.py
"""Answer validation for single questions.

Functions:
- check_choice: exact, case-sensitive match of a selected option id.
- check_boolean: case-insensitive "true"/"false" match.
- check_short_answer: trimmed, case-insensitive match against any accepted answer.
- validate: dispatch on the key's question type and return a ValidationResult.

Essays are never graded here; they come back as pending_review with no points.
A blank answer is a legitimate submission and simply scores as incorrect.
"""

from typing import Optional

from packages.schemas.attempt import Answer, AnswerKey, ValidationResult, Verdict

_BOOLEAN_TOKENS = {"true": True, "false": False}


def check_choice(content: Optional[str], correct_option: Optional[str]) -> bool:
    """Return True if `content` is exactly the correct option id."""
    if content is None or correct_option is None:
        return False
    return content == correct_option


def check_boolean(content: Optional[str], key: AnswerKey) -> bool:
    """Return True if `content` is the key's boolean written as "true"/"false" in any case, untrimmed."""
    expected = key.correct_boolean
    if expected is None and key.correct_option is not None:
        expected = _BOOLEAN_TOKENS.get(key.correct_option.strip().lower())
    if content is None or expected is None:
        return False
    given = _BOOLEAN_TOKENS.get(content.lower())
    return given is not None and given == expected


def check_short_answer(content: Optional[str], accepted_answers: Optional[list[str]]) -> bool:
    """Trimmed/lower-cased equality against any of `accepted_answers`."""
    cand = (content or "").strip().lower()
    if not cand:
        return False
    return any(cand == (a or "").strip().lower() for a in accepted_answers or [])


def validate(answer: Optional[Answer], key: AnswerKey) -> ValidationResult:
    """Grade one answer against its key.

    Args:
        answer: The submitted answer, or None when the question was left unanswered.
        key: Answer key; its `type` decides the policy and `full_points` the award.

    Returns:
        A ValidationResult. Essays yield PENDING_REVIEW with `points_awarded=None`.
    """
    content = answer.content if answer is not None else None

    if key.type == "essay":
        return ValidationResult(question_id=key.question_id, verdict=Verdict.PENDING_REVIEW, points_awarded=None)

    if key.type == "multiple-choice":
        correct = check_choice(content, key.correct_option)
    elif key.type == "true-false":
        correct = check_boolean(content, key)
    elif key.type == "short-answer":
        correct = check_short_answer(content, key.accepted_answers)
    else:
        raise ValueError(f"unsupported question type: {key.type}")

    return ValidationResult(
        question_id=key.question_id,
        verdict=Verdict.CORRECT if correct else Verdict.INCORRECT,
        points_awarded=key.full_points if correct else 0.0,
    )
