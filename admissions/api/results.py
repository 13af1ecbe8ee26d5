from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from typing import Any, List
from dataclasses import asdict
from datetime import datetime
from admissions.api.deps import ANY_ROLE, ensure_enrollment_access, get_services
from admissions.core import errors
from admissions.core.auth import require_roles, TokenData
from admissions.services.container import Services
from admissions.services.ledger import parse_answer

router = APIRouter()

class ResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    enrollment_id: int; exam_id: int; total_score_obtained: float; max_score_possible: float
    grade: str; graded_at: datetime

class AnswerOut(BaseModel):
    question_id: int; answer: Any; is_correct: bool; score_awarded: float; updated_at: datetime

@router.get("/exams/{exam_id}", response_model=List[ResultOut], dependencies=[Depends(require_roles("admin", "staff"))])
def results_by_exam(exam_id: int, services: Services = Depends(get_services)):
    return services.grading.results_for_exam(exam_id)

@router.get("/enrollments/{enrollment_id}", response_model=List[ResultOut])
def results_by_enrollment(enrollment_id: int, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                          services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    return services.grading.results_for_enrollment(enrollment_id, published_only=not user.is_staff)

@router.get("/enrollments/{enrollment_id}/exams/{exam_id}/answers", response_model=List[AnswerOut])
def graded_answers(enrollment_id: int, exam_id: int, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                   services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    if not user.is_staff:
        result = services.grading.get_result(enrollment_id, exam_id)
        if result is None or not services.grading.is_visible(result):
            raise errors.Forbidden("Answers are available once the result is published", exam_id=exam_id)
    return [
        AnswerOut(question_id=a.question_id, answer=parse_answer(a.answer), is_correct=a.is_correct,
                  score_awarded=a.score_awarded, updated_at=a.updated_at)
        for a in services.ledger.answers_for(enrollment_id, exam_id)
    ]

class PerformanceOut(BaseModel):
    discipline_name: str; exam_id: int; exam_name: str; exam_date: datetime
    score: float; max_score: float; grade: str

@router.get("/enrollments/{enrollment_id}/performance", response_model=List[PerformanceOut])
def performance(enrollment_id: int, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    rows = services.grading.performance_for_enrollment(enrollment_id, published_only=not user.is_staff)
    return [PerformanceOut(**asdict(row)) for row in rows]
