# services/attempts/store.py
"""Attempt persistence contract and an in-process implementation.

The contract is what makes the engine's invariants hold:
- `insert_active` checks for an active attempt and inserts in one atomic step.
- `upsert_answer` writes a single question's answer, never the whole map,
  and refuses attempts that are not in progress in the same atomic step.
- `save` is a compare-and-swap on `version` for lifecycle fields
  (status, intervals, completion, score, manual grades); it never touches answers.

Records handed out are copies; mutating them does not change the store.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol, Tuple

from packages.schemas.attempt import Answer, AttemptStatus, TestAttempt
from .errors import (
    AttemptAlreadyCompleted,
    AttemptNotFound,
    DuplicateActiveAttempt,
    InvalidTransition,
    StaleAttemptVersion,
)

_LIFECYCLE_FIELDS = ("status", "active_intervals", "completed_at", "score", "manual_grades")


class AttemptStore(Protocol):
    def insert_active(self, attempt: TestAttempt) -> TestAttempt:
        """Insert a new active attempt; raise DuplicateActiveAttempt if the pair already has one."""
        ...

    def get(self, attempt_id: str) -> Optional[TestAttempt]:
        ...

    def find_active(self, test_id: str, student_id: str) -> Optional[TestAttempt]:
        ...

    def upsert_answer(self, attempt_id: str, answer: Answer) -> TestAttempt:
        """Store `answer` under its question id; raise AttemptNotFound, AttemptAlreadyCompleted or InvalidTransition."""
        ...

    def save(self, attempt: TestAttempt, expected_version: int) -> TestAttempt:
        """Write lifecycle fields if the stored version still equals `expected_version`."""
        ...

    def list_by_student(self, student_id: str) -> List[TestAttempt]:
        ...

    def list_by_test(self, test_id: str) -> List[TestAttempt]:
        ...


class InMemoryAttemptStore:
    """Thread-safe dict store; one lock makes each operation atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, TestAttempt] = {}
        self._active: Dict[Tuple[str, str], str] = {}

    def insert_active(self, attempt: TestAttempt) -> TestAttempt:
        pair = (attempt.test_id, attempt.student_id)
        with self._lock:
            existing = self._active.get(pair)
            if existing is not None:
                raise DuplicateActiveAttempt(attempt.test_id, attempt.student_id, existing)
            stored = attempt.model_copy(deep=True)
            self._records[stored.attempt_id] = stored
            if stored.is_active:
                self._active[pair] = stored.attempt_id
            return stored.model_copy(deep=True)

    def get(self, attempt_id: str) -> Optional[TestAttempt]:
        with self._lock:
            rec = self._records.get(attempt_id)
            return rec.model_copy(deep=True) if rec is not None else None

    def find_active(self, test_id: str, student_id: str) -> Optional[TestAttempt]:
        with self._lock:
            attempt_id = self._active.get((test_id, student_id))
            if attempt_id is None:
                return None
            return self._records[attempt_id].model_copy(deep=True)

    def upsert_answer(self, attempt_id: str, answer: Answer) -> TestAttempt:
        with self._lock:
            rec = self._records.get(attempt_id)
            if rec is None:
                raise AttemptNotFound(attempt_id)
            if rec.status is AttemptStatus.COMPLETED:
                raise AttemptAlreadyCompleted(attempt_id, "submit answer")
            if rec.status is not AttemptStatus.IN_PROGRESS:
                raise InvalidTransition(attempt_id, rec.status.value, "submit answer")
            rec.answers[answer.question_id] = answer.model_copy()
            rec.version += 1
            return rec.model_copy(deep=True)

    def save(self, attempt: TestAttempt, expected_version: int) -> TestAttempt:
        with self._lock:
            rec = self._records.get(attempt.attempt_id)
            if rec is None:
                raise AttemptNotFound(attempt.attempt_id)
            if rec.version != expected_version:
                raise StaleAttemptVersion(attempt.attempt_id, expected_version)
            src = attempt.model_copy(deep=True)
            updated = rec.model_copy(update={f: getattr(src, f) for f in _LIFECYCLE_FIELDS}, deep=True)
            updated.version = rec.version + 1
            self._records[updated.attempt_id] = updated
            pair = (updated.test_id, updated.student_id)
            if not updated.is_active and self._active.get(pair) == updated.attempt_id:
                del self._active[pair]
            return updated.model_copy(deep=True)

    def list_by_student(self, student_id: str) -> List[TestAttempt]:
        with self._lock:
            found = [r for r in self._records.values() if r.student_id == student_id]
            return [r.model_copy(deep=True) for r in sorted(found, key=lambda r: r.started_at)]

    def list_by_test(self, test_id: str) -> List[TestAttempt]:
        with self._lock:
            found = [r for r in self._records.values() if r.test_id == test_id]
            return [r.model_copy(deep=True) for r in sorted(found, key=lambda r: r.started_at)]
