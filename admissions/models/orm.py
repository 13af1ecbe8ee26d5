from sqlalchemy import (
    BigInteger, Integer, String, Text, Boolean, Float,
    ForeignKey, JSON, DateTime, UniqueConstraint, Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import Optional, List, Dict, Any
import enum

from admissions.core.clock import utcnow
from admissions.core.database import Base

# BIGINT on PostgreSQL, rowid-backed INTEGER on SQLite so autoincrement works there too
BigId = BigInteger().with_variant(Integer, "sqlite")


def _enum(cls):
    return SQLEnum(cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32)


class EnrollmentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class ExamType(str, enum.Enum):
    OBJECTIVE = "objective"
    DISCURSIVE = "discursive"
    MIXED = "mixed"


class QuestionType(str, enum.Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    ESSAY = "essay"


class DocumentStatus(str, enum.Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


# ========== Catalog (read-only here) ==========

class Course(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)


class Discipline(Base):
    __tablename__ = "disciplines"
    __table_args__ = (
        Index("idx_disciplines_course", "course_id"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    course_id: Mapped[int] = mapped_column(BigId, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)


# ========== Admissions ==========

class Candidate(Base):
    __tablename__ = "candidates"

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    user_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    enrollments: Mapped[List["Enrollment"]] = relationship(back_populates="candidate", passive_deletes=True)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        Index("idx_enrollments_candidate", "candidate_id"),
        Index("idx_enrollments_course", "course_id"),
        Index("idx_enrollments_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    candidate_id: Mapped[int] = mapped_column(BigId, ForeignKey("candidates.id", ondelete="CASCADE"), nullable=False)
    course_id: Mapped[int] = mapped_column(BigId, ForeignKey("courses.id"), nullable=False)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[EnrollmentStatus] = mapped_column(
        _enum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.PENDING
    )
    enrolled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    candidate: Mapped["Candidate"] = relationship(back_populates="enrollments")
    documents: Mapped[List["EnrollmentDocument"]] = relationship(
        back_populates="enrollment", cascade="all, delete-orphan", passive_deletes=True
    )


class EnrollmentDocument(Base):
    __tablename__ = "enrollment_docs"
    __table_args__ = (
        Index("idx_docs_enrollment", "enrollment_id"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(BigId, ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    validation_status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus), nullable=False, default=DocumentStatus.PENDING
    )
    validation_comments: Mapped[Optional[str]] = mapped_column(Text)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    enrollment: Mapped["Enrollment"] = relationship(back_populates="documents")


# ========== Exams ==========

class Exam(Base):
    __tablename__ = "exams"
    __table_args__ = (
        Index("idx_exams_course", "course_id"),
        Index("idx_exams_date", "exam_date"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    course_id: Mapped[int] = mapped_column(BigId, ForeignKey("courses.id"), nullable=False)
    discipline_id: Mapped[int] = mapped_column(BigId, ForeignKey("disciplines.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    exam_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[ExamType] = mapped_column(_enum(ExamType), nullable=False)
    max_score: Mapped[float] = mapped_column(Float, nullable=False)
    second_call_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    second_call_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    publication_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    questions: Mapped[List["Question"]] = relationship(
        back_populates="exam", cascade="all, delete-orphan", passive_deletes=True, order_by="Question.id"
    )

    @property
    def raw_max(self) -> float:
        return sum(q.score for q in self.questions)

    def results_published(self, now: datetime) -> bool:
        return self.publication_date is not None and self.publication_date <= now


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_exam", "exam_id"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    exam_id: Mapped[int] = mapped_column(BigId, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[QuestionType] = mapped_column(_enum(QuestionType), nullable=False)
    options: Mapped[Optional[List[str]]] = mapped_column(JSON)
    correct_answer: Mapped[Optional[str]] = mapped_column(Text)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    exam: Mapped["Exam"] = relationship(back_populates="questions")


# ========== Delivery ==========

class ExamAttempt(Base):
    """Durable record of a timed sitting; the Redis session keys only cache it."""
    __tablename__ = "exam_attempts"
    __table_args__ = (
        Index("idx_ea_open_deadline", "closed_at", "deadline"),
        UniqueConstraint("enrollment_id", "exam_id", name="uq_exam_attempt"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(BigId, ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False)
    exam_id: Mapped[int] = mapped_column(BigId, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    trigger: Mapped[Optional[str]] = mapped_column("close_trigger", String(20))


class StudentAnswer(Base):
    __tablename__ = "student_answers"
    __table_args__ = (
        Index("idx_sa_exam_enrollment", "exam_id", "enrollment_id"),
        UniqueConstraint("enrollment_id", "question_id", name="uq_student_answer"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(BigId, ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False)
    exam_id: Mapped[int] = mapped_column(BigId, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(BigId, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)
    answer: Mapped[Optional[str]] = mapped_column(Text)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    score_awarded: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    answered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ExamResult(Base):
    __tablename__ = "exam_results"
    __table_args__ = (
        Index("idx_er_exam", "exam_id"),
        UniqueConstraint("enrollment_id", "exam_id", name="uq_exam_result"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(BigId, ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False)
    exam_id: Mapped[int] = mapped_column(BigId, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    total_score_obtained: Mapped[float] = mapped_column(Float, nullable=False)
    max_score_possible: Mapped[float] = mapped_column(Float, nullable=False, default=20.0)
    grade: Mapped[str] = mapped_column(String(20), nullable=False)
    graded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ========== Governance ==========

class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_al_entity", "entity_type", "entity_id"),
        Index("idx_al_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    changes: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
