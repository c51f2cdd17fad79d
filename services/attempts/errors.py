# services/attempts/errors.py
"""Caller-facing errors raised by the attempt engine.

All of them are recoverable: the engine raises, the caller decides what to do
(e.g. offer to resume the existing attempt). Store outages are not part of
this taxonomy and propagate as whatever the store raises.
"""

from typing import Optional


class AttemptError(Exception):
    """Base class for attempt engine errors."""


class DuplicateActiveAttempt(AttemptError):
    """A non-completed attempt already exists for (test_id, student_id)."""

    def __init__(self, test_id: str, student_id: str, attempt_id: Optional[str] = None) -> None:
        self.test_id = test_id
        self.student_id = student_id
        self.attempt_id = attempt_id
        super().__init__(f"student {student_id} already has an active attempt on test {test_id}")


class AttemptNotFound(AttemptError):
    def __init__(self, attempt_id: str) -> None:
        self.attempt_id = attempt_id
        super().__init__(f"attempt {attempt_id} not found")


class TestNotFound(AttemptError):
    __test__ = False  # not a pytest class

    def __init__(self, test_id: str) -> None:
        self.test_id = test_id
        super().__init__(f"test {test_id} not found")


class InvalidTransition(AttemptError):
    """The attempt's current status does not allow the requested operation."""

    def __init__(self, attempt_id: str, status: str, action: str, message: Optional[str] = None) -> None:
        self.attempt_id = attempt_id
        self.status = status
        self.action = action
        super().__init__(message or f"cannot {action} attempt {attempt_id} while {status}")


class AttemptAlreadyCompleted(InvalidTransition):
    """Mutation attempted on a completed attempt."""

    def __init__(self, attempt_id: str, action: str) -> None:
        super().__init__(attempt_id, "completed", action, f"attempt {attempt_id} is already completed")


class UnknownQuestion(AttemptError):
    def __init__(self, question_id: str, test_id: Optional[str] = None) -> None:
        self.question_id = question_id
        self.test_id = test_id
        where = f" in test {test_id}" if test_id else ""
        super().__init__(f"unknown question {question_id}{where}")


class InvalidManualGrade(AttemptError):
    def __init__(self, question_id: str, reason: str) -> None:
        self.question_id = question_id
        self.reason = reason
        super().__init__(f"invalid manual grade for {question_id}: {reason}")


class StaleAttemptVersion(AttemptError):
    """Optimistic-concurrency conflict; the engine reloads and retries."""

    def __init__(self, attempt_id: str, expected_version: int) -> None:
        self.attempt_id = attempt_id
        self.expected_version = expected_version
        super().__init__(f"attempt {attempt_id} changed since version {expected_version}")
