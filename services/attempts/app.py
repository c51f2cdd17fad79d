# services/attempts/app.py
"""FastAPI app for the attempt engine:
- POST /attempts: start an attempt
- POST /attempts/{id}/answers: submit or overwrite one answer (returns the live verdict)
- POST /attempts/{id}/suspend | /resume | /complete: lifecycle transitions
- POST /attempts/{id}/grades: reviewer grades for essay questions
- GET  /attempts/{id}, /attempts/{id}/elapsed, /attempts/{id}/results, /attempts/{id}/comparison
- GET  /students/{student_id}/attempts, /tests/{test_id}/attempts
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from packages.common.config import get_settings
from packages.common.logging import configure_logging
from packages.common.tracing import trace_middleware
from packages.schemas.attempt import AttemptResults, ScoreComparison, TestAttempt, ValidationResult
from .engine import AttemptEngine, build_engine
from .errors import (
    AttemptError,
    AttemptNotFound,
    DuplicateActiveAttempt,
    InvalidManualGrade,
    InvalidTransition,
    StaleAttemptVersion,
    TestNotFound,
    UnknownQuestion,
)

_STATUS_BY_ERROR = (
    ((AttemptNotFound, TestNotFound), 404),
    ((DuplicateActiveAttempt, StaleAttemptVersion, InvalidTransition), 409),
    ((UnknownQuestion, InvalidManualGrade), 422),
)


class StartRequest(BaseModel):
    test_id: str
    student_id: str


class AnswerRequest(BaseModel):
    question_id: str
    content: Optional[str] = None
    mark_for_review: bool = False


class CompleteRequest(BaseModel):
    passing_percentage: Optional[float] = Field(default=None, ge=0, le=100)


class GradesRequest(BaseModel):
    grades: Dict[str, float]


class ElapsedResponse(BaseModel):
    attempt_id: str
    elapsed_seconds: float
    time_remaining_seconds: Optional[float] = None


def status_for(exc: AttemptError) -> int:
    """HTTP status code for an engine error."""
    for types, code in _STATUS_BY_ERROR:
        if isinstance(exc, types):
            return code
    return 400


def create_app(engine: Optional[AttemptEngine] = None) -> FastAPI:
    """Build the service around `engine` (or one wired from settings)."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, json_logs=settings.JSON_LOGS, service=settings.SERVICE_NAME)
    eng = engine or build_engine(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if eng.events is not None:
            eng.events.close()

    app = FastAPI(title="Attempt Engine Service", version="1.0.0", lifespan=lifespan)
    app.middleware("http")(trace_middleware)
    app.state.engine = eng

    @app.exception_handler(AttemptError)
    async def _attempt_error(_: Request, exc: AttemptError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content={"detail": str(exc), "error": type(exc).__name__})

    @app.post("/attempts", response_model=TestAttempt, status_code=201)
    def start(req: StartRequest) -> TestAttempt:
        """Start a new attempt; 409 if the student already has one in progress."""
        return eng.start(req.test_id, req.student_id)

    @app.get("/attempts/{attempt_id}", response_model=TestAttempt)
    def get_attempt(attempt_id: str) -> TestAttempt:
        return eng.get_attempt(attempt_id)

    @app.post("/attempts/{attempt_id}/answers", response_model=ValidationResult)
    def submit_answer(attempt_id: str, req: AnswerRequest) -> ValidationResult:
        """Upsert one answer and return its immediate verdict."""
        return eng.submit_answer(attempt_id, req.question_id, req.content, mark_for_review=req.mark_for_review)

    @app.post("/attempts/{attempt_id}/suspend", response_model=TestAttempt)
    def suspend(attempt_id: str) -> TestAttempt:
        return eng.suspend(attempt_id)

    @app.post("/attempts/{attempt_id}/resume", response_model=TestAttempt)
    def resume(attempt_id: str) -> TestAttempt:
        return eng.resume(attempt_id)

    @app.post("/attempts/{attempt_id}/complete", response_model=TestAttempt)
    def complete(attempt_id: str, req: Optional[CompleteRequest] = None) -> TestAttempt:
        """Score and seal the attempt; the body may override the passing percentage."""
        return eng.complete(attempt_id, req.passing_percentage if req else None)

    @app.post("/attempts/{attempt_id}/grades", response_model=TestAttempt)
    def grade(attempt_id: str, req: GradesRequest) -> TestAttempt:
        return eng.apply_manual_grades(attempt_id, req.grades)

    @app.get("/attempts/{attempt_id}/elapsed", response_model=ElapsedResponse)
    def elapsed(attempt_id: str) -> ElapsedResponse:
        return ElapsedResponse(
            attempt_id=attempt_id,
            elapsed_seconds=eng.elapsed_seconds(attempt_id),
            time_remaining_seconds=eng.time_remaining_seconds(attempt_id),
        )

    @app.get("/attempts/{attempt_id}/results", response_model=AttemptResults)
    def results(attempt_id: str) -> AttemptResults:
        return eng.results(attempt_id)

    @app.get("/attempts/{attempt_id}/comparison", response_model=ScoreComparison)
    def comparison(attempt_id: str) -> ScoreComparison:
        return eng.compare_with_previous(attempt_id)

    @app.get("/students/{student_id}/attempts", response_model=List[TestAttempt])
    def by_student(student_id: str) -> List[TestAttempt]:
        return eng.list_attempts_by_student(student_id)

    @app.get("/tests/{test_id}/attempts", response_model=List[TestAttempt])
    def by_test(test_id: str) -> List[TestAttempt]:
        return eng.list_attempts_by_test(test_id)

    @app.get("/healthz", tags=["infra"])
    def healthz() -> Dict[str, bool]:
        return {"ok": True}

    return app


app = create_app()
