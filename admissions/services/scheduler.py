"""
Exam scheduling and question-bank maintenance.

An exam and its questions are written in one transaction. Once any student
answer exists against an exam, its question bank is frozen (``ExamLocked``);
only the date fields can still move, through ``reschedule_exam``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from admissions.core import errors
from admissions.core.clock import as_naive_utc, utcnow
from admissions.models.orm import (
    Course, Discipline, Enrollment, Exam, ExamResult, ExamType, Question, QuestionType, StudentAnswer,
)
from admissions.services.audit import record_audit
from admissions.services.grading import FAILED

logger = logging.getLogger(__name__)

TRUE_FALSE_VALUES = ("true", "false")
RESCHEDULABLE = ("exam_date", "second_call_eligible", "second_call_date", "publication_date")


@dataclass
class QuestionDraft:
    text: str
    type: str
    score: float
    options: Optional[List[str]] = None
    correct_answer: Optional[str] = None


@dataclass
class ExamDraft:
    course_id: int
    discipline_id: int
    name: str
    exam_date: datetime
    duration_minutes: int
    type: str
    questions: List[QuestionDraft] = field(default_factory=list)
    max_score: float = 20.0
    second_call_eligible: bool = False
    second_call_date: Optional[datetime] = None
    publication_date: Optional[datetime] = None


@dataclass
class SecondCallStatus:
    eligible: bool
    reason: str
    second_call_date: Optional[datetime] = None


def validate_question(draft: QuestionDraft, prefix: str = "question") -> List[errors.FieldViolation]:
    out = []
    if not (draft.text or "").strip():
        out.append(errors.FieldViolation(f"{prefix}.text", "required"))
    try:
        qtype = QuestionType(draft.type)
    except ValueError:
        out.append(errors.FieldViolation(f"{prefix}.type", f"unknown question type {draft.type!r}"))
        qtype = None
    if draft.score is None or draft.score <= 0:
        out.append(errors.FieldViolation(f"{prefix}.score", "must be greater than 0"))

    if qtype is QuestionType.MULTIPLE_CHOICE:
        if not draft.options:
            out.append(errors.FieldViolation(f"{prefix}.options", "required for multiple_choice"))
        elif draft.correct_answer not in draft.options:
            out.append(errors.FieldViolation(f"{prefix}.correct_answer", "must be one of the options"))
    elif qtype is QuestionType.TRUE_FALSE:
        if (draft.correct_answer or "").strip().lower() not in TRUE_FALSE_VALUES:
            out.append(errors.FieldViolation(f"{prefix}.correct_answer", "must be 'true' or 'false'"))
    return out


def validate_second_call(exam_date: Optional[datetime], eligible: bool,
                         second_call_date: Optional[datetime]) -> List[errors.FieldViolation]:
    if not eligible:
        return []
    if second_call_date is None:
        return [errors.FieldViolation("second_call_date", "required when second_call_eligible")]
    if exam_date is not None and as_naive_utc(second_call_date) <= as_naive_utc(exam_date):
        return [errors.FieldViolation("second_call_date", "must be after exam_date")]
    return []


def validate_exam(draft: ExamDraft) -> List[errors.FieldViolation]:
    out = []
    if not (draft.name or "").strip():
        out.append(errors.FieldViolation("name", "required"))
    if draft.exam_date is None:
        out.append(errors.FieldViolation("exam_date", "required"))
    if draft.duration_minutes is None or draft.duration_minutes <= 0:
        out.append(errors.FieldViolation("duration_minutes", "must be greater than 0"))
    try:
        ExamType(draft.type)
    except ValueError:
        out.append(errors.FieldViolation("type", f"unknown exam type {draft.type!r}"))
    if draft.max_score is None or draft.max_score <= 0:
        out.append(errors.FieldViolation("max_score", "must be greater than 0"))
    out.extend(validate_second_call(draft.exam_date, draft.second_call_eligible, draft.second_call_date))
    if not draft.questions:
        out.append(errors.FieldViolation("questions", "at least one question is required"))
    for i, q in enumerate(draft.questions):
        out.extend(validate_question(q, f"questions[{i}]"))
    return out


def _question_row(draft: QuestionDraft, now: datetime) -> Question:
    qtype = QuestionType(draft.type)
    answer = draft.correct_answer
    if qtype is QuestionType.TRUE_FALSE:
        answer = answer.strip().lower()
    return Question(
        text=draft.text.strip(), type=qtype,
        options=list(draft.options) if qtype is QuestionType.MULTIPLE_CHOICE else None,
        correct_answer=None if qtype is QuestionType.ESSAY else answer,
        score=float(draft.score), created_at=now, updated_at=now,
    )


class ExamScheduler:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def schedule_exam(self, draft: ExamDraft, actor_id: Optional[str] = None) -> Exam:
        violations = validate_exam(draft)
        if violations:
            raise errors.ValidationError(violations)

        with self.session_factory.begin() as db:
            self._check_catalog(db, draft.course_id, draft.discipline_id)
            now = self.clock()
            exam = Exam(
                course_id=draft.course_id, discipline_id=draft.discipline_id, name=draft.name.strip(),
                exam_date=as_naive_utc(draft.exam_date), duration_minutes=draft.duration_minutes,
                type=ExamType(draft.type), max_score=float(draft.max_score),
                second_call_eligible=draft.second_call_eligible,
                second_call_date=as_naive_utc(draft.second_call_date) if draft.second_call_date else None,
                publication_date=as_naive_utc(draft.publication_date) if draft.publication_date else None,
                created_at=now, updated_at=now,
                questions=[_question_row(q, now) for q in draft.questions],
            )
            db.add(exam)
            db.flush()
            record_audit(db, "schedule_exam", "exam", exam.id, actor_id,
                         {"name": exam.name, "questions": len(exam.questions)})
        logger.info("Scheduled exam %s (%s) with %d questions", exam.id, exam.name, len(exam.questions))
        return exam

    def _check_catalog(self, db: Session, course_id: int, discipline_id: int) -> None:
        violations = []
        if db.get(Course, course_id) is None:
            violations.append(errors.FieldViolation("course_id", f"course {course_id} does not exist"))
        discipline = db.get(Discipline, discipline_id)
        if discipline is None:
            violations.append(errors.FieldViolation("discipline_id", f"discipline {discipline_id} does not exist"))
        elif discipline.course_id != course_id:
            violations.append(errors.FieldViolation("discipline_id", "discipline belongs to another course"))
        if violations:
            raise errors.ValidationError(violations)

    def reschedule_exam(self, exam_id: int, actor_id: Optional[str] = None, **changes) -> Exam:
        """Move date fields of an exam. Allowed after answers exist; the second-call rule is re-checked."""
        unknown = sorted(set(changes) - set(RESCHEDULABLE))
        if unknown:
            raise errors.ValidationError([errors.FieldViolation(k, "not reschedulable") for k in unknown])

        with self.session_factory.begin() as db:
            exam = self._load_for_update(db, exam_id)
            merged = {k: getattr(exam, k) for k in RESCHEDULABLE}
            merged.update({k: as_naive_utc(v) if isinstance(v, datetime) else v for k, v in changes.items()})
            merged["second_call_eligible"] = bool(merged["second_call_eligible"])
            violations = []
            if merged["exam_date"] is None:
                violations.append(errors.FieldViolation("exam_date", "required"))
            violations.extend(validate_second_call(
                merged["exam_date"], bool(merged["second_call_eligible"]), merged["second_call_date"]
            ))
            if violations:
                raise errors.ValidationError(violations)

            before = {k: _jsonable(getattr(exam, k)) for k in changes}
            for key, value in merged.items():
                setattr(exam, key, value)
            exam.updated_at = self.clock()
            record_audit(db, "reschedule_exam", "exam", exam_id, actor_id,
                         {"before": before, "after": {k: _jsonable(merged[k]) for k in changes}})
        logger.info("Rescheduled exam %s: %s", exam_id, ", ".join(sorted(changes)) or "no changes")
        return self.get_exam(exam_id)

    # ---------- question bank ----------

    def _load_for_update(self, db: Session, exam_id: int) -> Exam:
        exam = db.get(Exam, exam_id, with_for_update=True)
        if exam is None:
            raise errors.ExamNotFound(f"Exam {exam_id} not found", exam_id=exam_id)
        return exam

    def _assert_unlocked(self, db: Session, exam_id: int) -> None:
        if db.scalar(select(StudentAnswer.id).where(StudentAnswer.exam_id == exam_id).limit(1)):
            raise errors.ExamLocked(f"Exam {exam_id} already has answers; its questions are frozen", exam_id=exam_id)

    def add_question(self, exam_id: int, draft: QuestionDraft, actor_id: Optional[str] = None) -> Question:
        violations = validate_question(draft)
        if violations:
            raise errors.ValidationError(violations)
        with self.session_factory.begin() as db:
            exam = self._load_for_update(db, exam_id)
            self._assert_unlocked(db, exam_id)
            question = _question_row(draft, self.clock())
            question.exam_id = exam.id
            db.add(question)
            db.flush()
            exam.updated_at = self.clock()
            record_audit(db, "add_question", "question", question.id, actor_id, {"exam_id": exam_id})
        return question

    def update_question(self, question_id: int, draft: QuestionDraft, actor_id: Optional[str] = None) -> Question:
        violations = validate_question(draft)
        if violations:
            raise errors.ValidationError(violations)
        with self.session_factory.begin() as db:
            question = db.get(Question, question_id)
            if question is None:
                raise errors.QuestionNotFound(f"Question {question_id} not found", question_id=question_id)
            self._load_for_update(db, question.exam_id)
            self._assert_unlocked(db, question.exam_id)
            fresh = _question_row(draft, self.clock())
            for attr in ("text", "type", "options", "correct_answer", "score"):
                setattr(question, attr, getattr(fresh, attr))
            question.updated_at = self.clock()
            record_audit(db, "update_question", "question", question_id, actor_id, {"exam_id": question.exam_id})
        return question

    def remove_question(self, question_id: int, actor_id: Optional[str] = None) -> None:
        with self.session_factory.begin() as db:
            question = db.get(Question, question_id)
            if question is None:
                raise errors.QuestionNotFound(f"Question {question_id} not found", question_id=question_id)
            exam_id = question.exam_id
            self._load_for_update(db, exam_id)
            self._assert_unlocked(db, exam_id)
            remaining = db.scalar(select(Question.id).where(Question.exam_id == exam_id, Question.id != question_id).limit(1))
            if remaining is None:
                raise errors.ValidationError([errors.FieldViolation("questions", "an exam needs at least one question")])
            db.delete(question)
            record_audit(db, "remove_question", "question", question_id, actor_id, {"exam_id": exam_id})

    # ---------- queries ----------

    def get_exam(self, exam_id: int) -> Exam:
        with self.session_factory() as db:
            exam = db.scalar(select(Exam).options(selectinload(Exam.questions)).where(Exam.id == exam_id))
            if exam is None:
                raise errors.ExamNotFound(f"Exam {exam_id} not found", exam_id=exam_id)
            return exam

    def list_upcoming(self, limit: int = 20, course_id: Optional[int] = None) -> List[Exam]:
        stmt = (
            select(Exam).options(selectinload(Exam.questions))
            .where(Exam.exam_date >= self.clock()).order_by(Exam.exam_date).limit(limit)
        )
        if course_id is not None:
            stmt = stmt.where(Exam.course_id == course_id)
        with self.session_factory() as db:
            return list(db.scalars(stmt))

    def second_call_eligibility(self, enrollment_id: int, exam_id: int) -> SecondCallStatus:
        with self.session_factory() as db:
            if db.get(Enrollment, enrollment_id) is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            exam = db.get(Exam, exam_id)
            if exam is None:
                raise errors.ExamNotFound(f"Exam {exam_id} not found", exam_id=exam_id)
            if not exam.second_call_eligible:
                return SecondCallStatus(False, "not_offered")
            result = db.scalar(select(ExamResult).where(
                ExamResult.enrollment_id == enrollment_id, ExamResult.exam_id == exam_id
            ))
            if result is None:
                return SecondCallStatus(True, "missed", exam.second_call_date)
            if result.grade == FAILED:
                return SecondCallStatus(True, "failed", exam.second_call_date)
            return SecondCallStatus(False, "passed")


def _jsonable(value):
    return value.isoformat() if isinstance(value, datetime) else value
