# services/attempts/engine.py
"""Attempt engine: the public entry point for starting, answering, pausing and finishing attempts.

Concurrency model:
- `start` relies on the store's atomic `insert_active`, so two concurrent starts
  for the same (test, student) yield exactly one attempt.
- Writes to one attempt are serialized by a per-attempt lock inside this
  process; across processes the store's per-question upsert and version
  compare-and-swap keep answers and transitions from being lost.
- There is no cross-attempt locking; nothing here blocks on another attempt.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Mapping, Optional

from packages.common.clock import Clock, SystemClock
from packages.common.config import Settings, get_settings
from packages.common.events import EventBus, build_event_bus
from packages.schemas.attempt import (
    Answer,
    AnswerKey,
    AttemptCompletedEvent,
    AttemptRescoredEvent,
    AttemptResults,
    AttemptStartedEvent,
    AttemptStatus,
    QuestionResult,
    ScoreComparison,
    TestAttempt,
    TestDefinition,
    ValidationResult,
)
from .catalog import InMemoryCatalog, QuestionCatalog, TestDefinitions, load_catalog
from .errors import (
    AttemptAlreadyCompleted,
    AttemptNotFound,
    DuplicateActiveAttempt,
    InvalidManualGrade,
    InvalidTransition,
    StaleAttemptVersion,
    TestNotFound,
    UnknownQuestion,
)
from .scorer import compare_scores, evaluate_questions, score_attempt, weights_by_question
from .sql_store import SqlAttemptStore
from .state_machine import AttemptStateMachine
from .store import AttemptStore, InMemoryAttemptStore
from .validator import validate

log = logging.getLogger(__name__)


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class AttemptEngine:
    """Orchestrates the state machine, validator and scorer over an attempt store."""

    def __init__(
        self,
        store: AttemptStore,
        questions: QuestionCatalog,
        tests: TestDefinitions,
        events: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        write_retries: int = 3,
    ) -> None:
        self._store = store
        self._questions = questions
        self._tests = tests
        self._events = events
        self._machine = AttemptStateMachine(clock or SystemClock())
        self._write_retries = max(0, int(write_retries))
        self._locks: Dict[str, _LockEntry] = {}
        self._locks_guard = threading.Lock()

    @property
    def state_machine(self) -> AttemptStateMachine:
        return self._machine

    @property
    def events(self) -> Optional[EventBus]:
        return self._events

    # ----------------------------- helpers ----------------------------- #

    @contextmanager
    def _attempt_lock(self, attempt_id: str) -> Iterator[None]:
        # entries live only while some caller holds or waits on them
        with self._locks_guard:
            entry = self._locks.get(attempt_id)
            if entry is None:
                entry = self._locks[attempt_id] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[attempt_id]

    def _require(self, attempt_id: str) -> TestAttempt:
        attempt = self._store.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(attempt_id)
        return attempt

    def _test(self, test_id: str) -> TestDefinition:
        test = self._tests.get_test(test_id)
        if test is None:
            raise TestNotFound(test_id)
        return test

    def _answer_keys(self, test: TestDefinition) -> Dict[str, AnswerKey]:
        keys: Dict[str, AnswerKey] = {}
        for q in test.questions():
            key = self._questions.get_answer_key(q.question_id)
            if key is None:
                raise UnknownQuestion(q.question_id, test.test_id)
            keys[q.question_id] = key
        return keys

    def _emit(self, name: str, key: str, payload: Mapping) -> None:
        if self._events is None:
            return
        try:
            self._events.publish(self._events.topic(name), key, dict(payload))
        except Exception:
            log.exception("Failed to enqueue %s event for attempt %s", name, key)

    def _write(self, attempt_id: str, change: Callable[[TestAttempt], TestAttempt]) -> TestAttempt:
        """Apply `change` to the latest record and save it, retrying on version conflicts."""
        conflicts = 0
        while True:
            current = self._require(attempt_id)
            updated = change(current)
            try:
                return self._store.save(updated, expected_version=current.version)
            except StaleAttemptVersion:
                conflicts += 1
                if conflicts > self._write_retries:
                    raise
                log.warning("Version conflict on attempt %s (try %d)", attempt_id, conflicts)

    # ----------------------------- lifecycle ----------------------------- #

    def start(self, test_id: str, student_id: str) -> TestAttempt:
        """Open a new attempt; raises DuplicateActiveAttempt if one is already active."""
        self._test(test_id)
        try:
            attempt = self._store.insert_active(self._machine.create(test_id, student_id))
        except DuplicateActiveAttempt as e:
            log.warning("Rejected start test=%s student=%s: active attempt %s", test_id, student_id, e.attempt_id)
            raise
        log.info("Started attempt %s test=%s student=%s", attempt.attempt_id, test_id, student_id)
        self._emit("started", attempt.attempt_id, AttemptStartedEvent(
            attempt_id=attempt.attempt_id,
            test_id=attempt.test_id,
            student_id=attempt.student_id,
            started_at=attempt.started_at,
        ).model_dump(mode="json"))
        return attempt

    def submit_answer(
        self,
        attempt_id: str,
        question_id: str,
        content: Optional[str],
        mark_for_review: bool = False,
    ) -> ValidationResult:
        """Upsert the answer for one question and return its live verdict.

        The verdict is feedback only; the final score is computed on completion.
        """
        with self._attempt_lock(attempt_id):
            attempt = self._require(attempt_id)
            if attempt.status is AttemptStatus.COMPLETED:
                raise AttemptAlreadyCompleted(attempt_id, "submit answer")
            if attempt.status is not AttemptStatus.IN_PROGRESS:
                raise InvalidTransition(attempt_id, attempt.status.value, "submit answer")
            weights = weights_by_question(self._test(attempt.test_id).questions())
            if question_id not in weights:
                raise UnknownQuestion(question_id, attempt.test_id)
            key = self._questions.get_answer_key(question_id)
            if key is None:
                raise UnknownQuestion(question_id, attempt.test_id)

            answer = Answer(
                question_id=question_id,
                type=key.type,
                content=content,
                submitted_at=self._machine.now(),
                marked_for_review=mark_for_review,
            )
            self._store.upsert_answer(attempt_id, answer)
            log.debug("Answer stored attempt=%s question=%s", attempt_id, question_id)
            return validate(answer, key.model_copy(update={"full_points": weights[question_id]}))

    def suspend(self, attempt_id: str) -> TestAttempt:
        with self._attempt_lock(attempt_id):
            attempt = self._write(attempt_id, self._machine.suspend)
        log.debug("Suspended attempt %s", attempt_id)
        return attempt

    def resume(self, attempt_id: str) -> TestAttempt:
        with self._attempt_lock(attempt_id):
            attempt = self._write(attempt_id, self._machine.resume)
        log.debug("Resumed attempt %s", attempt_id)
        return attempt

    def complete(self, attempt_id: str, passing_percentage: Optional[float] = None) -> TestAttempt:
        """Score every question of the test and seal the attempt.

        Args:
            attempt_id: Attempt to complete.
            passing_percentage: Overrides the test's own threshold when given.
        """

        def finish(attempt: TestAttempt) -> TestAttempt:
            if attempt.status is AttemptStatus.COMPLETED:
                raise AttemptAlreadyCompleted(attempt.attempt_id, "complete")
            test = self._test(attempt.test_id)
            threshold = test.passing_percentage if passing_percentage is None else passing_percentage
            score = score_attempt(attempt, test.questions(), self._answer_keys(test), threshold)
            return self._machine.complete(attempt, score)

        with self._attempt_lock(attempt_id):
            attempt = self._write(attempt_id, finish)

        score, completed_at = attempt.score, attempt.completed_at
        if score is None or completed_at is None:
            raise RuntimeError(f"attempt {attempt_id} was sealed without a score")
        log.info(
            "Completed attempt %s percentage=%.2f passed=%s provisional=%s",
            attempt_id, score.percentage, score.passed, score.provisional,
        )
        self._emit("completed", attempt_id, AttemptCompletedEvent(
            attempt_id=attempt.attempt_id,
            test_id=attempt.test_id,
            student_id=attempt.student_id,
            score=score,
            completed_at=completed_at,
        ).model_dump(mode="json"))
        return attempt

    def apply_manual_grades(self, attempt_id: str, grades: Mapping[str, float]) -> TestAttempt:
        """Record reviewer grades for essay questions and recompute the score.

        Only completed attempts can be graded; answers and completion time stay as they are.
        """

        def regrade(attempt: TestAttempt) -> TestAttempt:
            if attempt.status is not AttemptStatus.COMPLETED:
                raise InvalidTransition(attempt.attempt_id, attempt.status.value, "grade")
            test = self._test(attempt.test_id)
            weights = weights_by_question(test.questions())
            keys = self._answer_keys(test)
            for qid, points in grades.items():
                if qid not in weights:
                    raise UnknownQuestion(qid, attempt.test_id)
                if keys[qid].type != "essay":
                    raise InvalidManualGrade(qid, "question is graded automatically")
                if not 0 <= float(points) <= weights[qid]:
                    raise InvalidManualGrade(qid, f"points must be between 0 and {weights[qid]}")
            merged = {**attempt.manual_grades, **{q: float(p) for q, p in grades.items()}}
            # keep the threshold the attempt was completed with
            passing = (
                attempt.score.passing_percentage
                if attempt.score is not None
                else self._tests.get_passing_percentage(attempt.test_id)
            )
            score = score_attempt(attempt.model_copy(update={"manual_grades": merged}), test.questions(), keys, passing)
            return self._machine.rescore(attempt, score, merged)

        with self._attempt_lock(attempt_id):
            attempt = self._write(attempt_id, regrade)

        score = attempt.score
        if score is None:
            raise RuntimeError(f"attempt {attempt_id} was rescored without a score")
        log.info("Rescored attempt %s percentage=%.2f", attempt_id, score.percentage)
        self._emit("rescored", attempt_id, AttemptRescoredEvent(
            attempt_id=attempt.attempt_id,
            test_id=attempt.test_id,
            student_id=attempt.student_id,
            score=score,
            graded_question_ids=sorted(grades),
        ).model_dump(mode="json"))
        return attempt

    # ----------------------------- read side ----------------------------- #

    def get_attempt(self, attempt_id: str) -> TestAttempt:
        return self._require(attempt_id)

    def list_attempts_by_student(self, student_id: str) -> List[TestAttempt]:
        return self._store.list_by_student(student_id)

    def list_attempts_by_test(self, test_id: str) -> List[TestAttempt]:
        return self._store.list_by_test(test_id)

    def elapsed_seconds(self, attempt_id: str) -> float:
        return self._machine.elapsed_seconds(self._require(attempt_id))

    def time_remaining_seconds(self, attempt_id: str) -> Optional[float]:
        """Seconds left for timed tests, None for untimed ones. Never changes state."""
        attempt = self._require(attempt_id)
        limit = self._test(attempt.test_id).time_limit_seconds
        if limit is None:
            return None
        return max(0.0, limit - self._machine.elapsed_seconds(attempt))

    def results(self, attempt_id: str) -> AttemptResults:
        """Per-question report of a completed attempt."""
        attempt = self._require(attempt_id)
        if attempt.status is not AttemptStatus.COMPLETED or attempt.score is None:
            raise InvalidTransition(attempt_id, attempt.status.value, "report")
        test = self._test(attempt.test_id)
        section_of = {q.question_id: s.name for s in test.sections for q in s.questions}
        lines = []
        for number, (q, result) in enumerate(
            evaluate_questions(attempt, test.questions(), self._answer_keys(test)), start=1
        ):
            answer = attempt.answers.get(q.question_id)
            lines.append(QuestionResult(
                question_id=q.question_id,
                question_number=number,
                section=section_of[q.question_id],
                content=answer.content if answer else None,
                verdict=result.verdict,
                points_awarded=result.points_awarded,
                points_possible=q.points,
                marked_for_review=answer.marked_for_review if answer else False,
            ))
        return AttemptResults(
            attempt_id=attempt.attempt_id,
            test_id=attempt.test_id,
            student_id=attempt.student_id,
            completed_at=attempt.completed_at,
            elapsed_seconds=self._machine.elapsed_seconds(attempt),
            score=attempt.score,
            questions=lines,
        )

    def compare_with_previous(self, attempt_id: str) -> ScoreComparison:
        """Compare with the student's latest earlier completed attempt on the same test."""
        attempt = self._require(attempt_id)
        if attempt.status is not AttemptStatus.COMPLETED:
            raise InvalidTransition(attempt_id, attempt.status.value, "compare")
        earlier = [
            a for a in self._store.list_by_student(attempt.student_id)
            if a.test_id == attempt.test_id
            and a.attempt_id != attempt.attempt_id
            and a.status is AttemptStatus.COMPLETED
            and a.completed_at is not None
            and attempt.completed_at is not None
            and a.completed_at < attempt.completed_at
        ]
        previous = max(earlier, key=lambda a: a.completed_at) if earlier else None
        return compare_scores(attempt, previous)


def build_engine(settings: Settings | None = None, clock: Optional[Clock] = None) -> AttemptEngine:
    """Wire an engine from settings: SQL or in-memory store, YAML or empty catalog, event bus."""
    s = settings or get_settings()
    store: AttemptStore
    if s.DATABASE_URL:
        sql = SqlAttemptStore(s.DATABASE_URL)
        sql.init_db()
        store = sql
    else:
        store = InMemoryAttemptStore()
    catalog = load_catalog(s.CATALOG_PATH) if s.CATALOG_PATH else InMemoryCatalog()
    return AttemptEngine(
        store=store,
        questions=catalog,
        tests=catalog,
        events=build_event_bus(s),
        clock=clock,
        write_retries=s.WRITE_RETRIES,
    )
