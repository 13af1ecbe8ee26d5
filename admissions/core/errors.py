"""
Domain error taxonomy.

Every failure a component can report is an ``AdmissionsError`` subclass. The
``kind`` tells the caller how to react (fix the input, re-fetch state, retry...)
and ``code`` is the stable name exposed at the HTTP boundary.
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    TRANSIENT = "transient"
    FATAL = "fatal"


class AdmissionsError(Exception):
    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "kind": self.kind.value, "message": self.message, "details": self.details}


# ---------- validation ----------

@dataclass
class FieldViolation:
    field: str
    message: str


class ValidationError(AdmissionsError):
    kind = ErrorKind.VALIDATION

    def __init__(self, violations: List[FieldViolation], message: Optional[str] = None):
        self.violations = violations
        fields = ", ".join(v.field for v in violations)
        super().__init__(
            message or f"Invalid fields: {fields}",
            violations=[{"field": v.field, "message": v.message} for v in violations],
        )


class QuestionMismatch(AdmissionsError):
    kind = ErrorKind.VALIDATION


# ---------- state conflicts ----------

class StateConflict(AdmissionsError):
    kind = ErrorKind.STATE_CONFLICT


class DuplicateEmail(StateConflict):
    pass


class IllegalTransition(StateConflict):
    pass


class EnrollmentNotApproved(StateConflict):
    pass


class ExamAlreadyGraded(StateConflict):
    pass


class ExamLocked(StateConflict):
    pass


class ResultsPublished(StateConflict):
    pass


class SessionNotOpen(StateConflict):
    pass


class SessionClosed(StateConflict):
    pass


class SessionExpired(StateConflict):
    pass


# ---------- not found ----------

class NotFound(AdmissionsError):
    kind = ErrorKind.NOT_FOUND


class CandidateNotFound(NotFound):
    pass


class CourseNotFound(NotFound):
    pass


class ExamNotFound(NotFound):
    pass


class QuestionNotFound(NotFound):
    pass


class DocumentNotFound(NotFound):
    pass


# ---------- forbidden ----------

class Forbidden(AdmissionsError):
    kind = ErrorKind.FORBIDDEN


# ---------- transient ----------

class Transient(AdmissionsError):
    kind = ErrorKind.TRANSIENT


class CodeGenerationConflict(Transient):
    pass


# ---------- fatal ----------

class Fatal(AdmissionsError):
    kind = ErrorKind.FATAL


class NoQuestions(Fatal):
    pass
