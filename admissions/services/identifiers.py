from sqlalchemy import select
from sqlalchemy.orm import Session
from admissions.models.orm import Enrollment

SEQ_WIDTH = 4


def code_prefix(course_id: int, year: int) -> str:
    return f"{course_id}-{year}-"


def format_code(course_id: int, year: int, seq: int) -> str:
    return f"{code_prefix(course_id, year)}{seq:0{SEQ_WIDTH}d}"


def next_sequence(latest_code: str | None) -> int:
    if not latest_code:
        return 1
    return int(latest_code.rsplit("-", 1)[1]) + 1


def generate_code(db: Session, course_id: int, year: int) -> str:
    """Next enrollment code for (course, year). Must run in the transaction that inserts the enrollment."""
    prefix = code_prefix(course_id, year)
    latest = db.scalar(
        select(Enrollment.code).where(Enrollment.code.like(f"{prefix}%")).order_by(Enrollment.code.desc()).limit(1)
    )
    return format_code(course_id, year, next_sequence(latest))
