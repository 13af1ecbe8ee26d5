from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from admissions.api.deps import ANY_ROLE, ensure_enrollment_access, get_services
from admissions.core.auth import require_roles, TokenData
from admissions.models.orm import ExamType, QuestionType
from admissions.services.container import Services
from admissions.services.scheduler import ExamDraft, QuestionDraft

router = APIRouter()
STAFF = Depends(require_roles("admin", "staff"))

class QuestionIn(BaseModel):
    text: str
    type: str
    score: float
    options: Optional[List[str]] = None
    correct_answer: Optional[str] = None

    def draft(self) -> QuestionDraft:
        return QuestionDraft(self.text, self.type, self.score, self.options, self.correct_answer)

class ExamCreate(BaseModel):
    course_id: int; discipline_id: int; name: str
    exam_date: datetime; duration_minutes: int; type: str
    max_score: float = 20.0
    second_call_eligible: bool = False
    second_call_date: Optional[datetime] = None
    publication_date: Optional[datetime] = None
    questions: List[QuestionIn] = Field(default_factory=list)

class ExamReschedule(BaseModel):
    exam_date: Optional[datetime] = None
    second_call_eligible: Optional[bool] = None
    second_call_date: Optional[datetime] = None
    publication_date: Optional[datetime] = None

class QuestionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int; exam_id: int; text: str; type: QuestionType; options: Optional[List[str]] = None
    correct_answer: Optional[str] = None; score: float

class ExamOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int; course_id: int; discipline_id: int; name: str; exam_date: datetime; duration_minutes: int
    type: ExamType; max_score: float; second_call_eligible: bool
    second_call_date: Optional[datetime] = None; publication_date: Optional[datetime] = None
    questions: List[QuestionOut] = []

class ExamSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int; course_id: int; discipline_id: int; name: str; exam_date: datetime; duration_minutes: int
    type: ExamType; second_call_eligible: bool; second_call_date: Optional[datetime] = None

class SecondCallOut(BaseModel):
    enrollment_id: int; exam_id: int; eligible: bool; reason: str
    second_call_date: Optional[datetime] = None

@router.post("", response_model=ExamOut, status_code=201)
def schedule_exam(payload: ExamCreate, user: TokenData = STAFF, services: Services = Depends(get_services)):
    draft = ExamDraft(
        course_id=payload.course_id, discipline_id=payload.discipline_id, name=payload.name,
        exam_date=payload.exam_date, duration_minutes=payload.duration_minutes, type=payload.type,
        questions=[q.draft() for q in payload.questions], max_score=payload.max_score,
        second_call_eligible=payload.second_call_eligible, second_call_date=payload.second_call_date,
        publication_date=payload.publication_date,
    )
    return services.scheduler.schedule_exam(draft, actor_id=user.sub)

@router.get("/upcoming", response_model=List[ExamSummary], dependencies=[Depends(require_roles(*ANY_ROLE))])
def upcoming_exams(limit: int = Query(20, ge=1, le=200), course_id: Optional[int] = None,
                   services: Services = Depends(get_services)):
    return services.scheduler.list_upcoming(limit=limit, course_id=course_id)

@router.get("/{exam_id}", response_model=ExamOut, dependencies=[STAFF])
def get_exam(exam_id: int, services: Services = Depends(get_services)):
    return services.scheduler.get_exam(exam_id)

@router.patch("/{exam_id}/schedule", response_model=ExamOut)
def reschedule_exam(exam_id: int, payload: ExamReschedule, user: TokenData = STAFF,
                    services: Services = Depends(get_services)):
    return services.scheduler.reschedule_exam(exam_id, actor_id=user.sub, **payload.model_dump(exclude_unset=True))

@router.post("/{exam_id}/questions", response_model=QuestionOut, status_code=201)
def add_question(exam_id: int, payload: QuestionIn, user: TokenData = STAFF, services: Services = Depends(get_services)):
    return services.scheduler.add_question(exam_id, payload.draft(), actor_id=user.sub)

@router.put("/questions/{question_id}", response_model=QuestionOut)
def update_question(question_id: int, payload: QuestionIn, user: TokenData = STAFF,
                    services: Services = Depends(get_services)):
    return services.scheduler.update_question(question_id, payload.draft(), actor_id=user.sub)

@router.delete("/questions/{question_id}", status_code=204)
def remove_question(question_id: int, user: TokenData = STAFF, services: Services = Depends(get_services)):
    services.scheduler.remove_question(question_id, actor_id=user.sub)

@router.get("/{exam_id}/second-call/{enrollment_id}", response_model=SecondCallOut)
def second_call_eligibility(exam_id: int, enrollment_id: int, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                            services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    status = services.scheduler.second_call_eligibility(enrollment_id, exam_id)
    return SecondCallOut(enrollment_id=enrollment_id, exam_id=exam_id, eligible=status.eligible,
                         reason=status.reason, second_call_date=status.second_call_date)
