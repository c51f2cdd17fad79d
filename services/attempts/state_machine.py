# services/attempts/state_machine.py
"""Attempt lifecycle state machine.

States: in_progress -> suspended -> in_progress -> completed
in_progress and suspended can both go straight to completed; completed is terminal.

Every transition returns a new `TestAttempt`; the input record is never mutated.
Time is read only through the injected clock. Elapsed time is the sum of the
active intervals, so any number of suspend/resume cycles is accounted for.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from packages.common.clock import Clock, SystemClock, seconds_between
from packages.schemas.attempt import ActiveInterval, AttemptStatus, Score, TestAttempt
from .errors import AttemptAlreadyCompleted, InvalidTransition

VALID_TRANSITIONS: dict[AttemptStatus, tuple[AttemptStatus, ...]] = {
    AttemptStatus.IN_PROGRESS: (AttemptStatus.SUSPENDED, AttemptStatus.COMPLETED),
    AttemptStatus.SUSPENDED: (AttemptStatus.IN_PROGRESS, AttemptStatus.COMPLETED),
    AttemptStatus.COMPLETED: (),
}

_ACTIONS = {
    AttemptStatus.SUSPENDED: "suspend",
    AttemptStatus.IN_PROGRESS: "resume",
    AttemptStatus.COMPLETED: "complete",
}


def can_transition(current: AttemptStatus, target: AttemptStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, ())


def validate_transition(attempt: TestAttempt, target: AttemptStatus) -> None:
    """Raise if `attempt` may not move to `target`."""
    action = _ACTIONS[target]
    if attempt.status is AttemptStatus.COMPLETED:
        raise AttemptAlreadyCompleted(attempt.attempt_id, action)
    if not can_transition(attempt.status, target):
        raise InvalidTransition(attempt.attempt_id, attempt.status.value, action)


class AttemptStateMachine:
    """Lifecycle rules and elapsed-time accounting for a single attempt record."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()

    def now(self) -> datetime:
        return self._clock.now()

    def create(self, test_id: str, student_id: str) -> TestAttempt:
        """Build a fresh in-progress attempt with its first interval open at `started_at`.

        Uniqueness of the active attempt per (test_id, student_id) is enforced by
        the store's atomic insert, which raises DuplicateActiveAttempt.
        """
        now = self.now()
        return TestAttempt(
            attempt_id=uuid.uuid4().hex,
            test_id=test_id,
            student_id=student_id,
            status=AttemptStatus.IN_PROGRESS,
            started_at=now,
            active_intervals=[ActiveInterval(resumed_at=now)],
        )

    def suspend(self, attempt: TestAttempt) -> TestAttempt:
        validate_transition(attempt, AttemptStatus.SUSPENDED)
        return self._close_interval(attempt).model_copy(update={"status": AttemptStatus.SUSPENDED})

    def resume(self, attempt: TestAttempt) -> TestAttempt:
        validate_transition(attempt, AttemptStatus.IN_PROGRESS)
        intervals = [i.model_copy() for i in attempt.active_intervals]
        intervals.append(ActiveInterval(resumed_at=self.now()))
        return attempt.model_copy(update={"status": AttemptStatus.IN_PROGRESS, "active_intervals": intervals})

    def complete(self, attempt: TestAttempt, score: Score) -> TestAttempt:
        validate_transition(attempt, AttemptStatus.COMPLETED)
        now = self.now()
        return self._close_interval(attempt, now).model_copy(update={
            "status": AttemptStatus.COMPLETED,
            "completed_at": now,
            "score": score,
        })

    def rescore(self, attempt: TestAttempt, score: Score, manual_grades: dict[str, float]) -> TestAttempt:
        """Replace the score of a completed attempt after manual grading."""
        if attempt.status is not AttemptStatus.COMPLETED:
            raise InvalidTransition(attempt.attempt_id, attempt.status.value, "grade")
        return attempt.model_copy(update={"score": score, "manual_grades": dict(manual_grades)})

    def elapsed_seconds(self, attempt: TestAttempt, now: Optional[datetime] = None) -> float:
        """Sum of closed intervals plus the open one (only while in progress)."""
        now = now or self.now()
        total = 0.0
        for interval in attempt.active_intervals:
            if interval.ended_at is not None:
                total += seconds_between(interval.resumed_at, interval.ended_at)
            elif attempt.status is AttemptStatus.IN_PROGRESS:
                total += seconds_between(interval.resumed_at, now)
        return total

    def _close_interval(self, attempt: TestAttempt, at: Optional[datetime] = None) -> TestAttempt:
        intervals = [i.model_copy() for i in attempt.active_intervals]
        if intervals and intervals[-1].ended_at is None:
            intervals[-1] = intervals[-1].model_copy(update={"ended_at": at or self.now()})
        return attempt.model_copy(update={"active_intervals": intervals})
