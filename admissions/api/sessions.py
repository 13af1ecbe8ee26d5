from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Any, List, Optional, Union
from datetime import datetime
from admissions.api.deps import ANY_ROLE, ensure_enrollment_access, get_services
from admissions.api.results import ResultOut
from admissions.core.auth import require_roles, TokenData
from admissions.services.container import Services
from admissions.services.ledger import parse_answer
from admissions.services.sessions import MANUAL

router = APIRouter()
SITTER = Depends(require_roles(*ANY_ROLE))

class PublicQuestion(BaseModel):
    id: int; text: str; type: str; options: Optional[List[str]] = None; score: float

class SessionOut(BaseModel):
    enrollment_id: int; exam_id: int; exam_name: str
    opened_at: datetime; deadline: datetime
    questions: List[PublicQuestion]

class AnswerIn(BaseModel):
    question_id: int
    value: Union[str, List[str], None] = None

class AnswerAck(BaseModel):
    question_id: int; answer: Any; accepted: bool = True; updated_at: datetime

class CloseIn(BaseModel):
    trigger: str = MANUAL

class CloseOut(BaseModel):
    enrollment_id: int; exam_id: int; graded: bool
    result: Optional[ResultOut] = None

@router.post("/{enrollment_id}/{exam_id}/open", response_model=SessionOut)
def open_session(enrollment_id: int, exam_id: int, user: TokenData = SITTER, services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    opened = services.sessions.open_session(enrollment_id, exam_id)
    return SessionOut(enrollment_id=opened.enrollment_id, exam_id=opened.exam_id, exam_name=opened.exam_name,
                      opened_at=opened.opened_at, deadline=opened.deadline,
                      questions=[PublicQuestion(**q) for q in opened.questions])

@router.post("/{enrollment_id}/{exam_id}/answers", response_model=AnswerAck)
def record_answer(enrollment_id: int, exam_id: int, payload: AnswerIn, user: TokenData = SITTER,
                  services: Services = Depends(get_services)):
    # correctness is never echoed back while the attempt is running
    ensure_enrollment_access(services, user, enrollment_id)
    row = services.sessions.record_answer(enrollment_id, exam_id, payload.question_id, payload.value)
    return AnswerAck(question_id=row.question_id, answer=parse_answer(row.answer), updated_at=row.updated_at)

@router.post("/{enrollment_id}/{exam_id}/close", response_model=CloseOut)
def close_session(enrollment_id: int, exam_id: int, payload: Optional[CloseIn] = None, user: TokenData = SITTER,
                  services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    # only staff may record a timeout; students always close by hand
    trigger = payload.trigger if payload and user.is_staff else MANUAL
    result = services.sessions.close_session(enrollment_id, exam_id, trigger)
    visible = result is not None and (user.is_staff or services.grading.is_visible(result))
    return CloseOut(enrollment_id=enrollment_id, exam_id=exam_id, graded=result is not None,
                    result=ResultOut.model_validate(result) if visible else None)
