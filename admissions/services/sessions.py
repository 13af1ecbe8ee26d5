"""
Submission sessions: the protocol around one student's timed attempt.

The countdown starts on the first ``open_session`` and is stored on the
``exam_attempts`` row, never derived from the exam date. Redis caches that row
so answer writes can be checked without a database round trip; when the cached
keys have expired the row is read back and cached again. Answers are accepted
while ``now <= deadline``; the first write after that force-closes the attempt
and is rejected. Attempts nobody closes are picked up by ``sweep_expired``,
which the background worker runs periodically.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload, sessionmaker

from admissions.core import errors
from admissions.core.cache import SessionRegistry, SessionState
from admissions.core.clock import utcnow
from admissions.core.database import insert_or_keep
from admissions.models.orm import Enrollment, EnrollmentStatus, Exam, ExamAttempt, ExamResult, StudentAnswer
from admissions.services.grading import GradingEngine
from admissions.services.ledger import AnswerLedger

logger = logging.getLogger(__name__)

MANUAL = "manual"
TIMEOUT = "timeout"
TRIGGERS = (MANUAL, TIMEOUT)


@dataclass
class OpenedSession:
    enrollment_id: int
    exam_id: int
    exam_name: str
    opened_at: datetime
    deadline: datetime
    questions: List[Dict[str, Any]] = field(default_factory=list)


def _state(attempt: ExamAttempt) -> SessionState:
    return SessionState(
        enrollment_id=attempt.enrollment_id, exam_id=attempt.exam_id, opened_at=attempt.opened_at,
        deadline=attempt.deadline, closed_at=attempt.closed_at, trigger=attempt.trigger,
    )


class SubmissionSessions:
    def __init__(self, session_factory: sessionmaker, registry: SessionRegistry, ledger: AnswerLedger,
                 grading: GradingEngine, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.registry = registry
        self.ledger = ledger
        self.grading = grading
        self.clock = clock

    @staticmethod
    def _attempt(db: Session, enrollment_id: int, exam_id: int) -> Optional[ExamAttempt]:
        return db.scalar(
            select(ExamAttempt)
            .where(ExamAttempt.enrollment_id == enrollment_id, ExamAttempt.exam_id == exam_id)
            .execution_options(populate_existing=True)
        )

    def _cache(self, attempt: ExamAttempt) -> SessionState:
        state = _state(attempt)
        cached = self.registry.open(attempt.enrollment_id, attempt.exam_id, attempt.opened_at, attempt.deadline)
        if state.is_closed and (cached is None or not cached.is_closed):
            self.registry.close(state, state.trigger, state.closed_at)
        return state

    def load_state(self, enrollment_id: int, exam_id: int) -> Optional[SessionState]:
        """Cached session state, refilled from the attempt row when the Redis keys are gone."""
        state = self.registry.get(enrollment_id, exam_id)
        if state is not None:
            return state
        with self.session_factory() as db:
            attempt = self._attempt(db, enrollment_id, exam_id)
        return self._cache(attempt) if attempt is not None else None

    def open_session(self, enrollment_id: int, exam_id: int) -> OpenedSession:
        with self.session_factory.begin() as db:
            enrollment = db.get(Enrollment, enrollment_id)
            if enrollment is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            if enrollment.status is not EnrollmentStatus.APPROVED:
                raise errors.EnrollmentNotApproved(
                    f"Enrollment {enrollment_id} is {enrollment.status.value}, not approved",
                    enrollment_id=enrollment_id, status=enrollment.status.value,
                )
            exam = db.scalar(select(Exam).options(selectinload(Exam.questions)).where(Exam.id == exam_id))
            if exam is None:
                raise errors.ExamNotFound(f"Exam {exam_id} not found", exam_id=exam_id)
            graded = db.scalar(select(ExamResult.id).where(
                ExamResult.enrollment_id == enrollment_id, ExamResult.exam_id == exam_id
            ))
            if graded:
                raise errors.ExamAlreadyGraded(
                    f"Exam {exam_id} is already graded for enrollment {enrollment_id}",
                    enrollment_id=enrollment_id, exam_id=exam_id,
                )
            questions = [
                {"id": q.id, "text": q.text, "type": q.type.value, "options": q.options, "score": q.score}
                for q in exam.questions
            ]

            # the first open fixes the countdown, later opens keep the stored row
            now = self.clock()
            started = insert_or_keep(db, ExamAttempt, {
                "enrollment_id": enrollment_id, "exam_id": exam_id,
                "opened_at": now, "deadline": now + timedelta(minutes=exam.duration_minutes),
            }, ("enrollment_id", "exam_id"))
            attempt = self._attempt(db, enrollment_id, exam_id)

        state = self._cache(attempt)
        if state.is_closed:
            raise errors.SessionClosed("This attempt is already closed", enrollment_id=enrollment_id, exam_id=exam_id)
        if state.expired(now):
            self._close_expired(state)
            raise errors.SessionExpired("The time for this attempt is over", deadline=state.deadline.isoformat())
        if started:
            logger.info("Session opened enrollment=%s exam=%s deadline=%s", enrollment_id, exam_id,
                        state.deadline.isoformat())
        return OpenedSession(enrollment_id, exam_id, exam.name, state.opened_at, state.deadline, questions)

    def record_answer(self, enrollment_id: int, exam_id: int, question_id: int, value: Any) -> StudentAnswer:
        state = self.load_state(enrollment_id, exam_id)
        if state is None:
            raise errors.SessionNotOpen("Open the exam before answering", enrollment_id=enrollment_id, exam_id=exam_id)
        if state.is_closed:
            raise errors.SessionClosed("This attempt is already closed", enrollment_id=enrollment_id, exam_id=exam_id)
        if state.expired(self.clock()):
            self._close_expired(state)
            raise errors.SessionExpired("The time for this attempt is over", deadline=state.deadline.isoformat())
        # the ledger re-checks the attempt row, so a stale cache cannot reopen a closed attempt
        return self.ledger.upsert_answer(enrollment_id, exam_id, question_id, value)

    def close_session(self, enrollment_id: int, exam_id: int, trigger: str = MANUAL) -> Optional[ExamResult]:
        """Grade the attempt and mark it closed. Safe to call any number of times."""
        if trigger not in TRIGGERS:
            raise errors.ValidationError([errors.FieldViolation("trigger", f"must be one of {', '.join(TRIGGERS)}")])
        result = self.grading.grade(enrollment_id, exam_id)
        with self.session_factory.begin() as db:
            closed = db.execute(
                update(ExamAttempt)
                .where(ExamAttempt.enrollment_id == enrollment_id, ExamAttempt.exam_id == exam_id,
                       ExamAttempt.closed_at.is_(None))
                .values(closed_at=self.clock(), trigger=trigger)
            ).rowcount == 1
            attempt = self._attempt(db, enrollment_id, exam_id)
        if attempt is not None:
            self._cache(attempt)
        if closed:
            logger.info("Session closed enrollment=%s exam=%s trigger=%s", enrollment_id, exam_id, trigger)
        return result

    def _close_expired(self, state: SessionState) -> None:
        logger.info("Deadline passed for enrollment=%s exam=%s, auto-submitting", state.enrollment_id, state.exam_id)
        self.close_session(state.enrollment_id, state.exam_id, TIMEOUT)

    def sweep_expired(self) -> List[Tuple[int, int]]:
        """Force-close every attempt whose deadline elapsed without a close."""
        now = self.clock()
        with self.session_factory() as db:
            due = db.execute(
                select(ExamAttempt.enrollment_id, ExamAttempt.exam_id)
                .where(ExamAttempt.closed_at.is_(None), ExamAttempt.deadline < now)
                .order_by(ExamAttempt.id)
            ).all()
        closed = []
        for enrollment_id, exam_id in due:
            try:
                self.close_session(enrollment_id, exam_id, TIMEOUT)
            except Exception:
                logger.exception("Auto-close failed for enrollment=%s exam=%s", enrollment_id, exam_id)
                continue
            closed.append((enrollment_id, exam_id))
        if closed:
            logger.info("Sweep closed %d expired session(s)", len(closed))
        return closed
