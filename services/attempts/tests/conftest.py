"""Shared fixtures for the attempt engine tests."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest

from packages.common.events import EventBus
from packages.schemas.attempt import AnswerKey, Section, SectionQuestion, TestDefinition
from services.attempts.catalog import InMemoryCatalog
from services.attempts.engine import AttemptEngine
from services.attempts.store import InMemoryAttemptStore

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@dataclass
class FakeClock:
    t: datetime = T0

    def now(self) -> datetime:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += timedelta(seconds=seconds)


@dataclass
class RecordingPublisher:
    sent: List[Tuple[str, str, bytes]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def send(self, topic: str, key: str, payload: bytes) -> None:
        with self._lock:
            self.sent.append((topic, key, payload))

    def flush(self) -> None:
        return None


def _mcq(qid: str, correct: str = "a") -> AnswerKey:
    return AnswerKey(question_id=qid, type="multiple-choice", full_points=10, correct_option=correct)


def build_catalog() -> InMemoryCatalog:
    catalog = InMemoryCatalog()

    # five multiple-choice questions, 10 points each, pass at 60%
    mcq_ids = [f"mc{i}" for i in range(1, 6)]
    for qid in mcq_ids:
        catalog.add_key(_mcq(qid))
    catalog.add_test(TestDefinition(
        test_id="mcq-5",
        title="Five choices",
        passing_percentage=60,
        sections=[
            Section(name="part-1", questions=[SectionQuestion(question_id=q, points=10) for q in mcq_ids[:3]]),
            Section(name="part-2", questions=[SectionQuestion(question_id=q, points=10) for q in mcq_ids[3:]]),
        ],
    ))

    # one essay plus four multiple-choice
    catalog.add_key(AnswerKey(question_id="essay1", type="essay", full_points=10))
    catalog.add_test(TestDefinition(
        test_id="with-essay",
        passing_percentage=60,
        sections=[
            Section(name="choices", questions=[SectionQuestion(question_id=q, points=10) for q in mcq_ids[:4]]),
            Section(name="writing", questions=[SectionQuestion(question_id="essay1", points=10)]),
        ],
    ))

    catalog.add_key(AnswerKey(
        question_id="capital-fr", type="short-answer", full_points=5, accepted_answers=["Paris"],
    ))
    catalog.add_key(AnswerKey(question_id="sky-blue", type="true-false", full_points=5, correct_boolean=True))
    catalog.add_test(TestDefinition(
        test_id="timed-mixed",
        passing_percentage=50,
        time_limit_seconds=600,
        sections=[Section(name="mixed", questions=[
            SectionQuestion(question_id="capital-fr", points=5),
            SectionQuestion(question_id="sky-blue", points=5),
        ])],
    ))

    catalog.add_test(TestDefinition(test_id="empty", sections=[]))
    return catalog


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return build_catalog()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def bus(publisher: RecordingPublisher):
    b = EventBus(publisher, topic_prefix="attempt")
    yield b
    b.close()


@pytest.fixture
def store() -> InMemoryAttemptStore:
    return InMemoryAttemptStore()


@pytest.fixture
def engine(store, catalog, bus, clock) -> AttemptEngine:
    return AttemptEngine(store=store, questions=catalog, tests=catalog, events=bus, clock=clock)
