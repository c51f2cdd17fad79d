# services/attempts/sql_store.py
"""SQLAlchemy-backed attempt store.

Defines two tables:
- attempts: one row per attempt with lifecycle fields and an optimistic `version`.
  A partial unique index on (test_id, student_id) WHERE status != 'completed'
  lets the database reject a second active attempt, so concurrent starts
  cannot both succeed.
- attempt_answers: one row per (attempt_id, question_id); answers are upserted
  row by row so concurrent submissions for different questions never overwrite
  each other.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from packages.schemas.attempt import ActiveInterval, Answer, AttemptStatus, Score, TestAttempt
from .errors import (
    AttemptAlreadyCompleted,
    AttemptNotFound,
    DuplicateActiveAttempt,
    InvalidTransition,
    StaleAttemptVersion,
)

log = logging.getLogger(__name__)

_COMPLETED = AttemptStatus.COMPLETED.value
_IN_PROGRESS = AttemptStatus.IN_PROGRESS.value


class Base(DeclarativeBase):
    pass


class AttemptRow(Base):
    """Attempt record.

    Attributes:
        attempt_id: Opaque primary key.
        test_id / student_id: The pair at most one active attempt may exist for.
        status: in_progress / suspended / completed.
        intervals: JSON list of {resumed_at, ended_at}.
        score: JSON-encoded Score, null until completion.
        manual_grades: JSON mapping question id -> points.
        version: Incremented on every write.
    """

    __tablename__ = "attempts"
    __table_args__ = (
        Index(
            "uq_attempts_active_pair",
            "test_id",
            "student_id",
            unique=True,
            sqlite_where=text(f"status != '{_COMPLETED}'"),
            postgresql_where=text(f"status != '{_COMPLETED}'"),
        ),
        Index("ix_attempts_student", "student_id", "started_at"),
        Index("ix_attempts_test", "test_id", "started_at"),
    )

    attempt_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    test_id: Mapped[str] = mapped_column(String(128))
    student_id: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    intervals: Mapped[list] = mapped_column(JSON, default=list)
    score: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    manual_grades: Mapped[dict] = mapped_column(JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, default=0)


class AnswerRow(Base):
    __tablename__ = "attempt_answers"
    attempt_id: Mapped[str] = mapped_column(ForeignKey("attempts.attempt_id", ondelete="CASCADE"), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    type: Mapped[str] = mapped_column(String(32))
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    marked_for_review: Mapped[bool] = mapped_column(Boolean, default=False)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; every stored timestamp is UTC
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, echo=echo, pool_pre_ping=True)


class SqlAttemptStore:
    """`AttemptStore` over any SQLAlchemy database with partial-index support."""

    def __init__(self, engine: Engine | str) -> None:
        self.engine = create_db_engine(engine) if isinstance(engine, str) else engine
        self._session = sessionmaker(self.engine, expire_on_commit=False)

    def init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        Base.metadata.create_all(self.engine)

    # ---------------------------- mapping ---------------------------- #

    def _to_model(self, row: AttemptRow, answers: List[AnswerRow]) -> TestAttempt:
        return TestAttempt(
            attempt_id=row.attempt_id,
            test_id=row.test_id,
            student_id=row.student_id,
            status=AttemptStatus(row.status),
            answers={
                a.question_id: Answer(
                    question_id=a.question_id,
                    type=a.type,
                    content=a.content,
                    submitted_at=_aware(a.submitted_at),
                    marked_for_review=a.marked_for_review,
                )
                for a in answers
            },
            started_at=_aware(row.started_at),
            active_intervals=[ActiveInterval.model_validate(i) for i in row.intervals or []],
            completed_at=_aware(row.completed_at),
            score=Score.model_validate(row.score) if row.score else None,
            manual_grades=dict(row.manual_grades or {}),
            version=row.version,
        )

    def _load(self, s: Session, attempt_id: str) -> Optional[TestAttempt]:
        row = s.get(AttemptRow, attempt_id, populate_existing=True)
        if row is None:
            return None
        answers = s.execute(select(AnswerRow).where(AnswerRow.attempt_id == attempt_id)).scalars().all()
        return self._to_model(row, list(answers))

    def _load_many(self, s: Session, rows: List[AttemptRow]) -> List[TestAttempt]:
        if not rows:
            return []
        ids = [r.attempt_id for r in rows]
        by_attempt: dict[str, List[AnswerRow]] = {i: [] for i in ids}
        for a in s.execute(select(AnswerRow).where(AnswerRow.attempt_id.in_(ids))).scalars():
            by_attempt[a.attempt_id].append(a)
        return [self._to_model(r, by_attempt[r.attempt_id]) for r in rows]

    @staticmethod
    def _lifecycle_values(attempt: TestAttempt) -> dict:
        return {
            "status": attempt.status.value,
            "completed_at": attempt.completed_at,
            "intervals": [i.model_dump(mode="json") for i in attempt.active_intervals],
            "score": attempt.score.model_dump(mode="json") if attempt.score else None,
            "manual_grades": dict(attempt.manual_grades),
        }

    # ---------------------------- contract ---------------------------- #

    def insert_active(self, attempt: TestAttempt) -> TestAttempt:
        row = AttemptRow(
            attempt_id=attempt.attempt_id,
            test_id=attempt.test_id,
            student_id=attempt.student_id,
            started_at=attempt.started_at,
            version=attempt.version,
            **self._lifecycle_values(attempt),
        )
        try:
            with self._session.begin() as s:
                s.add(row)
        except IntegrityError:
            existing = self.find_active(attempt.test_id, attempt.student_id)
            log.warning("Active attempt already exists test=%s student=%s", attempt.test_id, attempt.student_id)
            raise DuplicateActiveAttempt(
                attempt.test_id, attempt.student_id, existing.attempt_id if existing else None
            ) from None
        return self.get(attempt.attempt_id)  # type: ignore[return-value]

    def get(self, attempt_id: str) -> Optional[TestAttempt]:
        with self._session() as s:
            return self._load(s, attempt_id)

    def find_active(self, test_id: str, student_id: str) -> Optional[TestAttempt]:
        with self._session() as s:
            row = s.execute(
                select(AttemptRow).where(
                    AttemptRow.test_id == test_id,
                    AttemptRow.student_id == student_id,
                    AttemptRow.status != _COMPLETED,
                )
            ).scalar_one_or_none()
            return self._load(s, row.attempt_id) if row is not None else None

    def _answer_upsert(self, s: Session, attempt_id: str, answer: Answer) -> None:
        values = {
            "attempt_id": attempt_id,
            "question_id": answer.question_id,
            "type": answer.type,
            "content": answer.content,
            "submitted_at": answer.submitted_at,
            "marked_for_review": answer.marked_for_review,
        }
        changed = {k: v for k, v in values.items() if k not in ("attempt_id", "question_id")}
        dialect = self.engine.dialect.name
        if dialect in ("sqlite", "postgresql"):
            ins = (sqlite_insert if dialect == "sqlite" else pg_insert)(AnswerRow).values(**values)
            s.execute(ins.on_conflict_do_update(index_elements=["attempt_id", "question_id"], set_=changed))
        else:
            s.merge(AnswerRow(**values))

    def upsert_answer(self, attempt_id: str, answer: Answer) -> TestAttempt:
        with self._session.begin() as s:
            # Bumping the version first locks the row and re-checks status atomically
            res = s.execute(
                update(AttemptRow)
                .where(AttemptRow.attempt_id == attempt_id, AttemptRow.status == _IN_PROGRESS)
                .values(version=AttemptRow.version + 1)
            )
            if res.rowcount == 0:
                row = s.get(AttemptRow, attempt_id)
                if row is None:
                    raise AttemptNotFound(attempt_id)
                if row.status == _COMPLETED:
                    raise AttemptAlreadyCompleted(attempt_id, "submit answer")
                raise InvalidTransition(attempt_id, row.status, "submit answer")
            self._answer_upsert(s, attempt_id, answer)
            s.flush()
            return self._load(s, attempt_id)  # type: ignore[return-value]

    def save(self, attempt: TestAttempt, expected_version: int) -> TestAttempt:
        with self._session.begin() as s:
            res = s.execute(
                update(AttemptRow)
                .where(AttemptRow.attempt_id == attempt.attempt_id, AttemptRow.version == expected_version)
                .values(version=expected_version + 1, **self._lifecycle_values(attempt))
            )
            if res.rowcount == 0:
                if s.get(AttemptRow, attempt.attempt_id) is None:
                    raise AttemptNotFound(attempt.attempt_id)
                raise StaleAttemptVersion(attempt.attempt_id, expected_version)
            return self._load(s, attempt.attempt_id)  # type: ignore[return-value]

    def list_by_student(self, student_id: str) -> List[TestAttempt]:
        with self._session() as s:
            rows = s.execute(
                select(AttemptRow).where(AttemptRow.student_id == student_id).order_by(AttemptRow.started_at)
            ).scalars().all()
            return self._load_many(s, list(rows))

    def list_by_test(self, test_id: str) -> List[TestAttempt]:
        with self._session() as s:
            rows = s.execute(
                select(AttemptRow).where(AttemptRow.test_id == test_id).order_by(AttemptRow.started_at)
            ).scalars().all()
            return self._load_many(s, list(rows))
