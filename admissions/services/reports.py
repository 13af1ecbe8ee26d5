"""
Read-only aggregates for the admin dashboard.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import extract, func, select
from sqlalchemy.orm import sessionmaker

from admissions.core.clock import utcnow
from admissions.models.orm import (
    DocumentStatus, Enrollment, EnrollmentDocument, EnrollmentStatus, Exam, ExamResult,
)

MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
RECENT_RESULTS_DAYS = 30


@dataclass
class DashboardStats:
    pending_enrollments: int
    upcoming_exams: int
    results_last_30_days: int
    pending_documents: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ReportingService:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def dashboard_stats(self) -> DashboardStats:
        now = self.clock()
        with self.session_factory() as db:
            def count(stmt):
                return db.scalar(stmt) or 0

            return DashboardStats(
                pending_enrollments=count(
                    select(func.count(Enrollment.id)).where(Enrollment.status == EnrollmentStatus.PENDING)
                ),
                upcoming_exams=count(select(func.count(Exam.id)).where(Exam.exam_date >= now)),
                results_last_30_days=count(
                    select(func.count(ExamResult.id))
                    .where(ExamResult.graded_at >= now - timedelta(days=RECENT_RESULTS_DAYS))
                ),
                pending_documents=count(
                    select(func.count(EnrollmentDocument.id))
                    .where(EnrollmentDocument.validation_status == DocumentStatus.PENDING)
                ),
            )

    def enrollments_by_month(self, year: Optional[int] = None) -> List[Dict[str, object]]:
        """Twelve rows, January first; months without enrollments report zero."""
        year = year or self.clock().year
        month = extract("month", Enrollment.enrolled_at)
        with self.session_factory() as db:
            rows = db.execute(
                select(month, func.count(Enrollment.id))
                .where(Enrollment.enrolled_at >= datetime(year, 1, 1), Enrollment.enrolled_at < datetime(year + 1, 1, 1))
                .group_by(month)
            ).all()
        counts = {int(m): total for m, total in rows}
        return [{"month": name, "total": int(counts.get(i, 0))} for i, name in enumerate(MONTH_NAMES, start=1)]
