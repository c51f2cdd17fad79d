"""Attempt schemas: answer keys, test definitions, attempts, verdicts and scores."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

QuestionType = Literal["multiple-choice", "true-false", "short-answer", "essay"]


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUSPENDED = "suspended"
    COMPLETED = "completed"


class Verdict(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    PENDING_REVIEW = "pending_review"


class AnswerKey(BaseModel):
    """Grading key for one question, as served by the question catalog."""
    question_id: str
    type: QuestionType
    full_points: float = Field(default=1.0, ge=0)
    correct_option: Optional[str] = None
    correct_boolean: Optional[bool] = None
    accepted_answers: Optional[List[str]] = None


class SectionQuestion(BaseModel):
    """A question slot inside a section, with its point weight."""
    question_id: str
    points: float = Field(ge=0)


class Section(BaseModel):
    name: str
    questions: List[SectionQuestion] = Field(default_factory=list)


class TestDefinition(BaseModel):
    """Section structure, weights and passing threshold of a test."""
    __test__ = False  # not a pytest class

    test_id: str
    title: str = ""
    sections: List[Section] = Field(default_factory=list)
    passing_percentage: float = Field(default=60.0, ge=0, le=100)
    time_limit_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _questions_are_unique(self) -> "TestDefinition":
        seen = set()
        for q in self.questions():
            if q.question_id in seen:
                raise ValueError(f"question {q.question_id} appears more than once in test {self.test_id}")
            seen.add(q.question_id)
        return self

    def questions(self) -> List[SectionQuestion]:
        """All question slots in section order."""
        return [q for s in self.sections for q in s.questions]


class Answer(BaseModel):
    """Latest answer a student submitted for one question."""
    question_id: str
    type: QuestionType
    content: Optional[str] = None
    submitted_at: datetime
    marked_for_review: bool = False


class ActiveInterval(BaseModel):
    """A span during which the attempt was in progress; `ended_at` is None while open."""
    resumed_at: datetime
    ended_at: Optional[datetime] = None


class ValidationResult(BaseModel):
    question_id: str
    verdict: Verdict
    points_awarded: Optional[float] = None


class Score(BaseModel):
    """Aggregated result of an attempt.

    `provisional` is set while any essay still awaits a manual grade; those
    questions count as zero until graded.
    """
    total_points: float
    max_points: float
    percentage: float
    passed: bool
    passing_percentage: float = 60.0
    provisional: bool = False
    pending_question_ids: List[str] = Field(default_factory=list)
    grade: str = "F"
    performance_level: str = "poor"


class TestAttempt(BaseModel):
    """One student's pass at one test (aggregate root)."""
    __test__ = False  # not a pytest class

    attempt_id: str
    test_id: str
    student_id: str
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    answers: Dict[str, Answer] = Field(default_factory=dict)
    started_at: datetime
    active_intervals: List[ActiveInterval] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
    score: Optional[Score] = None
    manual_grades: Dict[str, float] = Field(default_factory=dict)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is not AttemptStatus.COMPLETED

    def open_interval(self) -> Optional[ActiveInterval]:
        """Return the currently open interval, if any."""
        if self.active_intervals and self.active_intervals[-1].ended_at is None:
            return self.active_intervals[-1]
        return None


class QuestionResult(BaseModel):
    """Per-question line of a results report."""
    question_id: str
    question_number: int
    section: str
    content: Optional[str] = None
    verdict: Verdict
    points_awarded: Optional[float] = None
    points_possible: float
    marked_for_review: bool = False


class AttemptResults(BaseModel):
    attempt_id: str
    test_id: str
    student_id: str
    completed_at: datetime
    elapsed_seconds: float
    score: Score
    questions: List[QuestionResult]


class ScoreComparison(BaseModel):
    attempt_id: str
    previous_attempt_id: Optional[str] = None
    improvement: float = 0.0
    is_improving: bool = False


# Event payloads

class AttemptStartedEvent(BaseModel):
    attempt_id: str
    test_id: str
    student_id: str
    started_at: datetime


class AttemptCompletedEvent(BaseModel):
    attempt_id: str
    test_id: str
    student_id: str
    score: Score
    completed_at: datetime


class AttemptRescoredEvent(BaseModel):
    attempt_id: str
    test_id: str
    student_id: str
    score: Score
    graded_question_ids: List[str]
