import json
import logging
from datetime import datetime
from typing import Any, Callable, List, Tuple

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from admissions.core import errors
from admissions.core.clock import utcnow
from admissions.core.database import upsert
from admissions.models.orm import Enrollment, ExamAttempt, ExamResult, Question, QuestionType, StudentAnswer

logger = logging.getLogger(__name__)


def serialize_answer(value: Any) -> str:
    """Lists (multi-select submissions) are stored as a JSON array, everything else as text."""
    if isinstance(value, (list, tuple)):
        return json.dumps([str(v) for v in value])
    return "" if value is None else str(value)


def parse_answer(stored: str):
    if stored and stored.startswith("["):
        try:
            return json.loads(stored)
        except ValueError:
            pass
    return stored


def _norm(value: str) -> str:
    return value.strip().lower()


def evaluate(question: Question, value: Any) -> Tuple[bool, float]:
    """(is_correct, score_awarded). Essays score zero until graded by hand."""
    if question.type is QuestionType.ESSAY or question.correct_answer is None:
        return False, 0.0
    if isinstance(value, (list, tuple)):
        if len(value) != 1:
            return False, 0.0
        value = value[0]
    if value is None:
        return False, 0.0
    correct = _norm(str(value)) == _norm(question.correct_answer)
    return correct, (question.score if correct else 0.0)


class AnswerLedger:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def upsert_answer(self, enrollment_id: int, exam_id: int, question_id: int, raw_value: Any) -> StudentAnswer:
        with self.session_factory.begin() as db:
            question = db.get(Question, question_id)
            if question is None or question.exam_id != exam_id:
                raise errors.QuestionMismatch(
                    f"Question {question_id} does not belong to exam {exam_id}",
                    question_id=question_id, exam_id=exam_id,
                )
            if db.get(Enrollment, enrollment_id, with_for_update=True) is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            graded = db.scalar(select(ExamResult.id).where(
                ExamResult.enrollment_id == enrollment_id, ExamResult.exam_id == exam_id
            ))
            if graded:
                raise errors.ExamAlreadyGraded(
                    f"Exam {exam_id} is already graded for enrollment {enrollment_id}",
                    enrollment_id=enrollment_id, exam_id=exam_id,
                )
            closed_at = db.scalar(select(ExamAttempt.closed_at).where(
                ExamAttempt.enrollment_id == enrollment_id, ExamAttempt.exam_id == exam_id
            ))
            if closed_at is not None:
                raise errors.SessionClosed(
                    "This attempt is already closed", enrollment_id=enrollment_id, exam_id=exam_id
                )

            is_correct, awarded = evaluate(question, raw_value)
            now = self.clock()
            upsert(
                db, StudentAnswer,
                {
                    "enrollment_id": enrollment_id, "exam_id": exam_id, "question_id": question_id,
                    "answer": serialize_answer(raw_value), "is_correct": is_correct, "score_awarded": awarded,
                    "answered_at": now, "updated_at": now,
                },
                index_elements=("enrollment_id", "question_id"),
                update_columns=("answer", "is_correct", "score_awarded", "updated_at"),
            )
            row = db.scalar(
                select(StudentAnswer)
                .where(StudentAnswer.enrollment_id == enrollment_id, StudentAnswer.question_id == question_id)
                .execution_options(populate_existing=True)
            )
        logger.debug("Answer recorded enrollment=%s question=%s correct=%s", enrollment_id, question_id, is_correct)
        return row

    def answers_for(self, enrollment_id: int, exam_id: int) -> List[StudentAnswer]:
        with self.session_factory() as db:
            return list(db.scalars(
                select(StudentAnswer)
                .where(StudentAnswer.enrollment_id == enrollment_id, StudentAnswer.exam_id == exam_id)
                .order_by(StudentAnswer.question_id)
            ))
