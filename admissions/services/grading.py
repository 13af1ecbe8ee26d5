"""
Grading engine: turns the answer ledger of one (enrollment, exam) attempt into a
normalized 0-20 result.

    normalized = round(raw_obtained / raw_max * 20, 2), clamped to [0, 20]
    raw_max    = sum of the exam's question scores (never ``exam.max_score``)

Grading is at-most-once per pair: an existing result is returned as is, and
concurrent first gradings race on the (enrollment_id, exam_id) unique key where
the loser keeps the winner's row.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from admissions.core import errors
from admissions.core.clock import utcnow
from admissions.core.database import insert_or_keep, upsert
from admissions.models.orm import Discipline, Enrollment, Exam, ExamResult, StudentAnswer
from admissions.services.audit import record_audit

logger = logging.getLogger(__name__)

APPROVED = "approved"
FAILED = "failed"
MAX_SCORE = 20.0
PASS_MARK = 10.0

_SCALE = Decimal("20")
_CENTS = Decimal("0.01")


def normalize_score(raw_obtained: float, raw_max: float) -> float:
    if raw_max <= 0:
        raise errors.NoQuestions("Cannot normalize against a zero raw maximum")
    value = (Decimal(str(raw_obtained)) / Decimal(str(raw_max)) * _SCALE).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return float(min(max(value, Decimal("0")), _SCALE))


def grade_label(score: float) -> str:
    return APPROVED if score >= PASS_MARK else FAILED


@dataclass
class GradingFailure:
    enrollment_id: int
    code: str
    message: str


@dataclass
class GradingReport:
    exam_id: int
    graded: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[GradingFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PerformanceRow:
    discipline_name: str
    exam_id: int
    exam_name: str
    exam_date: datetime
    score: float
    max_score: float
    grade: str


class GradingEngine:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    @staticmethod
    def _result(db: Session, enrollment_id: int, exam_id: int) -> Optional[ExamResult]:
        return db.scalar(
            select(ExamResult)
            .where(ExamResult.enrollment_id == enrollment_id, ExamResult.exam_id == exam_id)
            .execution_options(populate_existing=True)
        )

    def grade(self, enrollment_id: int, exam_id: int, regrade: bool = False,
              actor_id: Optional[str] = None) -> Optional[ExamResult]:
        """Grade one attempt. Returns None for a no-show (no answers recorded)."""
        with self.session_factory.begin() as db:
            exam = db.scalar(select(Exam).options(selectinload(Exam.questions)).where(Exam.id == exam_id))
            if exam is None:
                raise errors.ExamNotFound(f"Exam {exam_id} not found", exam_id=exam_id)
            # serializes with answer writes for the same enrollment
            if db.get(Enrollment, enrollment_id, with_for_update=True) is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)

            existing = self._result(db, enrollment_id, exam_id)
            if existing is not None and not regrade:
                return existing
            if existing is not None and exam.results_published(self.clock()):
                raise errors.ResultsPublished(
                    f"Results of exam {exam_id} are already published", exam_id=exam_id, enrollment_id=enrollment_id
                )

            answers = list(db.scalars(select(StudentAnswer).where(
                StudentAnswer.enrollment_id == enrollment_id, StudentAnswer.exam_id == exam_id
            )))
            if not answers:
                logger.info("No answers for enrollment %s on exam %s, nothing to grade", enrollment_id, exam_id)
                return None

            raw_max = exam.raw_max
            if raw_max <= 0:
                raise errors.NoQuestions(f"Exam {exam_id} has no scored questions", exam_id=exam_id)
            raw_obtained = sum(a.score_awarded for a in answers)
            normalized = normalize_score(raw_obtained, raw_max)
            now = self.clock()
            values = {
                "enrollment_id": enrollment_id, "exam_id": exam_id,
                "total_score_obtained": normalized, "max_score_possible": MAX_SCORE,
                "grade": grade_label(normalized), "graded_at": now, "created_at": now, "updated_at": now,
            }
            if regrade:
                upsert(db, ExamResult, values, ("enrollment_id", "exam_id"),
                       ("total_score_obtained", "grade", "graded_at", "updated_at"))
                written = True
            else:
                written = insert_or_keep(db, ExamResult, values, ("enrollment_id", "exam_id"))
            if written:
                record_audit(db, "regrade" if existing is not None else "grade", "exam_result",
                             f"{enrollment_id}:{exam_id}", actor_id,
                             {"raw_obtained": raw_obtained, "raw_max": raw_max, "normalized": normalized})
            result = self._result(db, enrollment_id, exam_id)

        if written:
            logger.info("Graded enrollment %s on exam %s: %.2f (%s)", enrollment_id, exam_id,
                        result.total_score_obtained, result.grade)
        else:
            logger.info("Enrollment %s on exam %s was graded concurrently, keeping stored result",
                        enrollment_id, exam_id)
        return result

    def grade_all(self, exam_id: int, regrade: bool = False, actor_id: Optional[str] = None,
                  on_progress: Optional[Callable[[int, int], None]] = None) -> GradingReport:
        """Grade every enrollment that answered the exam, one transaction per enrollment."""
        with self.session_factory() as db:
            exam = db.scalar(select(Exam).options(selectinload(Exam.questions)).where(Exam.id == exam_id))
            if exam is None:
                raise errors.ExamNotFound(f"Exam {exam_id} not found", exam_id=exam_id)
            if exam.raw_max <= 0:
                raise errors.NoQuestions(f"Exam {exam_id} has no scored questions", exam_id=exam_id)
            enrollment_ids = list(db.scalars(
                select(StudentAnswer.enrollment_id).where(StudentAnswer.exam_id == exam_id)
                .distinct().order_by(StudentAnswer.enrollment_id)
            ))

        report = GradingReport(exam_id=exam_id)
        total = len(enrollment_ids)
        for done, enrollment_id in enumerate(enrollment_ids, start=1):
            try:
                result = self.grade(enrollment_id, exam_id, regrade=regrade, actor_id=actor_id)
            except errors.AdmissionsError as exc:
                logger.warning("Grading enrollment %s on exam %s failed: %s", enrollment_id, exam_id, exc)
                report.failed.append(GradingFailure(enrollment_id, exc.code, exc.message))
            except Exception as exc:
                logger.exception("Unexpected error grading enrollment %s on exam %s", enrollment_id, exam_id)
                report.failed.append(GradingFailure(enrollment_id, type(exc).__name__, str(exc)))
            else:
                (report.graded if result is not None else report.skipped).append(enrollment_id)
            if on_progress is not None:
                on_progress(done, total)

        logger.info("grade_all exam=%s graded=%d skipped=%d failed=%d", exam_id,
                    len(report.graded), len(report.skipped), len(report.failed))
        return report

    # ---------- queries ----------

    def get_result(self, enrollment_id: int, exam_id: int) -> Optional[ExamResult]:
        with self.session_factory() as db:
            return self._result(db, enrollment_id, exam_id)

    def results_for_exam(self, exam_id: int) -> List[ExamResult]:
        with self.session_factory() as db:
            if db.get(Exam, exam_id) is None:
                raise errors.ExamNotFound(f"Exam {exam_id} not found", exam_id=exam_id)
            return list(db.scalars(
                select(ExamResult).where(ExamResult.exam_id == exam_id).order_by(ExamResult.enrollment_id)
            ))

    def results_for_enrollment(self, enrollment_id: int, published_only: bool = False) -> List[ExamResult]:
        """All results of an enrollment. ``published_only`` hides exams whose publication date is still ahead."""
        stmt = (
            select(ExamResult).join(Exam, Exam.id == ExamResult.exam_id)
            .where(ExamResult.enrollment_id == enrollment_id).order_by(Exam.exam_date)
        )
        if published_only:
            stmt = stmt.where((Exam.publication_date.is_(None)) | (Exam.publication_date <= self.clock()))
        with self.session_factory() as db:
            return list(db.scalars(stmt))

    def performance_for_enrollment(self, enrollment_id: int, published_only: bool = False) -> List[PerformanceRow]:
        """Results grouped by discipline, oldest sitting first within each discipline."""
        stmt = (
            select(Discipline.name, Exam.id, Exam.name, Exam.exam_date,
                   ExamResult.total_score_obtained, ExamResult.max_score_possible, ExamResult.grade)
            .select_from(ExamResult)
            .join(Exam, Exam.id == ExamResult.exam_id)
            .join(Discipline, Discipline.id == Exam.discipline_id)
            .where(ExamResult.enrollment_id == enrollment_id)
            .order_by(Discipline.name, Exam.exam_date)
        )
        if published_only:
            stmt = stmt.where((Exam.publication_date.is_(None)) | (Exam.publication_date <= self.clock()))
        with self.session_factory() as db:
            return [PerformanceRow(*row) for row in db.execute(stmt)]

    def is_visible(self, result: ExamResult) -> bool:
        """Students see a result once its exam has no publication date or the date has been reached."""
        with self.session_factory() as db:
            exam = db.get(Exam, result.exam_id)
            return exam.publication_date is None or exam.publication_date <= self.clock()
