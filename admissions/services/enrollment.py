"""
Candidate registration and the enrollment status machine.

    pending  -> approved | rejected
    approved -> completed

``rejected`` and ``completed`` are terminal. Only admin/staff may move an
enrollment, and only along these edges.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload, sessionmaker

from admissions.core import errors
from admissions.core.auth import STAFF_ROLES
from admissions.core.clock import utcnow
from admissions.models.orm import (
    Candidate, Course, DocumentStatus, Enrollment, EnrollmentDocument, EnrollmentStatus,
)
from admissions.services.audit import record_audit
from admissions.services.identifiers import generate_code

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[EnrollmentStatus, FrozenSet[EnrollmentStatus]] = {
    EnrollmentStatus.PENDING: frozenset({EnrollmentStatus.APPROVED, EnrollmentStatus.REJECTED}),
    EnrollmentStatus.APPROVED: frozenset({EnrollmentStatus.COMPLETED}),
    EnrollmentStatus.REJECTED: frozenset(),
    EnrollmentStatus.COMPLETED: frozenset(),
}


def can_transition(current: EnrollmentStatus, target: EnrollmentStatus) -> bool:
    return target in TRANSITIONS[current]


def _parse_status(value, field: str = "target_status") -> EnrollmentStatus:
    try:
        return EnrollmentStatus(value)
    except ValueError:
        raise errors.ValidationError([errors.FieldViolation(field, f"unknown status {value!r}")])


class EnrollmentService:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    # ---------- candidates ----------

    def register_candidate(self, first_name: str, email: str, last_name: Optional[str] = None,
                           phone: Optional[str] = None, user_id: Optional[str] = None) -> Candidate:
        email = (email or "").strip().lower()
        violations = []
        if not (first_name or "").strip():
            violations.append(errors.FieldViolation("first_name", "required"))
        if "@" not in email:
            violations.append(errors.FieldViolation("email", "must be a valid email address"))
        if violations:
            raise errors.ValidationError(violations)

        with self.session_factory.begin() as db:
            if db.scalar(select(Candidate.id).where(func.lower(Candidate.email) == email)):
                raise errors.DuplicateEmail(f"Email {email} is already registered", email=email)
            if user_id and db.scalar(select(Candidate.id).where(Candidate.user_id == user_id)):
                raise errors.StateConflict("User already has a candidate profile", user_id=user_id)
            candidate = Candidate(
                first_name=first_name.strip(), last_name=last_name, email=email, phone=phone,
                user_id=user_id, created_at=self.clock(),
            )
            db.add(candidate)
            db.flush()
        logger.info("Registered candidate %s", candidate.id)
        return candidate

    def get_candidate(self, candidate_id: int) -> Candidate:
        with self.session_factory() as db:
            candidate = db.get(Candidate, candidate_id)
            if candidate is None:
                raise errors.CandidateNotFound(f"Candidate {candidate_id} not found", candidate_id=candidate_id)
            return candidate

    # ---------- enrollments ----------

    def submit_enrollment(self, candidate_id: int, course_id: int) -> Enrollment:
        """Create a pending enrollment with a freshly generated code.

        A concurrent registration for the same course/year can take the code we
        computed; the read-increment-write cycle is retried once before giving up.
        """
        try:
            return self._insert_enrollment(candidate_id, course_id)
        except IntegrityError:
            logger.warning("Enrollment code collision for course %s, retrying once", course_id)
        try:
            return self._insert_enrollment(candidate_id, course_id)
        except IntegrityError as exc:
            raise errors.CodeGenerationConflict(
                "Could not allocate an enrollment code, retry later", course_id=course_id
            ) from exc

    def _insert_enrollment(self, candidate_id: int, course_id: int) -> Enrollment:
        with self.session_factory.begin() as db:
            candidate = db.get(Candidate, candidate_id)
            if candidate is None:
                raise errors.CandidateNotFound(f"Candidate {candidate_id} not found", candidate_id=candidate_id)
            if db.get(Course, course_id) is None:
                raise errors.CourseNotFound(f"Course {course_id} not found", course_id=course_id)
            owned = db.scalar(
                select(Enrollment.id).join(Candidate)
                .where(func.lower(Candidate.email) == candidate.email.lower()).limit(1)
            )
            if owned:
                raise errors.DuplicateEmail(
                    f"Email {candidate.email} already owns an enrollment", email=candidate.email, enrollment_id=owned
                )

            now = self.clock()
            enrollment = Enrollment(
                candidate_id=candidate_id, course_id=course_id, code=generate_code(db, course_id, now.year),
                status=EnrollmentStatus.PENDING, enrolled_at=now, updated_at=now,
            )
            db.add(enrollment)
            db.flush()
            record_audit(db, "submit_enrollment", "enrollment", enrollment.id, candidate.user_id,
                         {"code": enrollment.code, "course_id": course_id})
        logger.info("Enrollment %s created with code %s", enrollment.id, enrollment.code)
        return enrollment

    def transition(self, enrollment_id: int, target_status, actor_role: str,
                   actor_id: Optional[str] = None) -> Enrollment:
        if actor_role not in STAFF_ROLES:
            raise errors.Forbidden(f"Role {actor_role!r} cannot change enrollment status", role=actor_role)
        target = _parse_status(target_status)

        with self.session_factory.begin() as db:
            enrollment = db.get(Enrollment, enrollment_id, with_for_update=True)
            if enrollment is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            current = enrollment.status
            if not can_transition(current, target):
                raise errors.IllegalTransition(
                    f"Cannot move enrollment from {current.value} to {target.value}",
                    current=current.value, target=target.value,
                )
            enrollment.status = target
            enrollment.updated_at = self.clock()
            record_audit(db, "transition_enrollment", "enrollment", enrollment_id, actor_id,
                         {"from": current.value, "to": target.value, "role": actor_role})
        logger.info("Enrollment %s: %s -> %s by %s", enrollment_id, current.value, target.value, actor_role)
        return enrollment

    def get(self, enrollment_id: int) -> Enrollment:
        with self.session_factory() as db:
            enrollment = db.scalar(
                select(Enrollment).options(selectinload(Enrollment.candidate)).where(Enrollment.id == enrollment_id)
            )
            if enrollment is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            return enrollment

    def list(self, status: Optional[str] = None, course_id: Optional[int] = None) -> List[Enrollment]:
        stmt = select(Enrollment).options(selectinload(Enrollment.candidate)).order_by(Enrollment.enrolled_at.desc())
        if status is not None:
            stmt = stmt.where(Enrollment.status == _parse_status(status, "status"))
        if course_id is not None:
            stmt = stmt.where(Enrollment.course_id == course_id)
        with self.session_factory() as db:
            return list(db.scalars(stmt))

    def assert_owned_by(self, enrollment_id: int, user_id: str) -> Enrollment:
        enrollment = self.get(enrollment_id)
        if enrollment.candidate.user_id != user_id:
            raise errors.Forbidden("Enrollment belongs to another user", enrollment_id=enrollment_id)
        return enrollment

    # ---------- documents (metadata only; files live in the document store) ----------

    def attach_document(self, enrollment_id: int, doc_type: str, path: str) -> EnrollmentDocument:
        violations = []
        if not (doc_type or "").strip():
            violations.append(errors.FieldViolation("type", "required"))
        if not (path or "").strip():
            violations.append(errors.FieldViolation("path", "required"))
        if violations:
            raise errors.ValidationError(violations)
        with self.session_factory.begin() as db:
            if db.get(Enrollment, enrollment_id) is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            doc = EnrollmentDocument(
                enrollment_id=enrollment_id, type=doc_type.strip(), path=path.strip(),
                validation_status=DocumentStatus.PENDING, uploaded_at=self.clock(),
            )
            db.add(doc)
            db.flush()
        return doc

    def review_document(self, document_id: int, status: str, actor_role: str,
                        comments: Optional[str] = None, actor_id: Optional[str] = None) -> EnrollmentDocument:
        if actor_role not in STAFF_ROLES:
            raise errors.Forbidden(f"Role {actor_role!r} cannot review documents", role=actor_role)
        try:
            new_status = DocumentStatus(status)
        except ValueError:
            raise errors.ValidationError([errors.FieldViolation("validation_status", f"unknown status {status!r}")])
        with self.session_factory.begin() as db:
            doc = db.get(EnrollmentDocument, document_id)
            if doc is None:
                raise errors.DocumentNotFound(f"Document {document_id} not found", document_id=document_id)
            doc.validation_status = new_status
            doc.validation_comments = comments
            doc.validated_at = self.clock()
            record_audit(db, "review_document", "enrollment_doc", document_id, actor_id, {"status": new_status.value})
        return doc

    def list_documents(self, enrollment_id: int) -> List[EnrollmentDocument]:
        with self.session_factory() as db:
            if db.get(Enrollment, enrollment_id) is None:
                raise errors.NotFound(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
            return list(db.scalars(
                select(EnrollmentDocument).where(EnrollmentDocument.enrollment_id == enrollment_id)
                .order_by(EnrollmentDocument.id)
            ))
