from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from typing import List, Optional
from datetime import datetime
from admissions.api.deps import ANY_ROLE, ensure_candidate_access, ensure_enrollment_access, get_services
from admissions.core.auth import require_roles, TokenData
from admissions.models.orm import DocumentStatus, EnrollmentStatus
from admissions.services.container import Services

router = APIRouter()

class EnrollmentCreate(BaseModel):
    candidate_id: int
    course_id: int

class EnrollmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int; candidate_id: int; course_id: int; code: str; status: EnrollmentStatus
    enrolled_at: datetime; updated_at: datetime

class TransitionIn(BaseModel):
    target_status: str

class DocumentIn(BaseModel):
    type: str
    path: str

class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int; enrollment_id: int; type: str; path: str; validation_status: DocumentStatus
    validation_comments: Optional[str] = None; uploaded_at: datetime; validated_at: Optional[datetime] = None

class DocumentReview(BaseModel):
    validation_status: str
    comments: Optional[str] = None

@router.post("", response_model=EnrollmentOut, status_code=201)
def submit_enrollment(payload: EnrollmentCreate, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                      services: Services = Depends(get_services)):
    ensure_candidate_access(services, user, payload.candidate_id)
    return services.enrollments.submit_enrollment(payload.candidate_id, payload.course_id)

@router.get("", response_model=List[EnrollmentOut], dependencies=[Depends(require_roles("admin", "staff"))])
def list_enrollments(status: Optional[str] = Query(None), course_id: Optional[int] = Query(None),
                     services: Services = Depends(get_services)):
    return services.enrollments.list(status=status, course_id=course_id)

@router.get("/{enrollment_id}", response_model=EnrollmentOut)
def get_enrollment(enrollment_id: int, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                   services: Services = Depends(get_services)):
    return ensure_enrollment_access(services, user, enrollment_id)

@router.post("/{enrollment_id}/transition", response_model=EnrollmentOut)
def transition_enrollment(enrollment_id: int, payload: TransitionIn,
                          user: TokenData = Depends(require_roles(*ANY_ROLE)),
                          services: Services = Depends(get_services)):
    # role policy lives in the state machine, which answers Forbidden
    return services.enrollments.transition(enrollment_id, payload.target_status, user.primary_role, user.sub)

@router.post("/{enrollment_id}/documents", response_model=DocumentOut, status_code=201)
def attach_document(enrollment_id: int, payload: DocumentIn, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                    services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    return services.enrollments.attach_document(enrollment_id, payload.type, payload.path)

@router.get("/{enrollment_id}/documents", response_model=List[DocumentOut])
def list_documents(enrollment_id: int, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                   services: Services = Depends(get_services)):
    ensure_enrollment_access(services, user, enrollment_id)
    return services.enrollments.list_documents(enrollment_id)

@router.post("/documents/{document_id}/review", response_model=DocumentOut)
def review_document(document_id: int, payload: DocumentReview, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                    services: Services = Depends(get_services)):
    return services.enrollments.review_document(
        document_id, payload.validation_status, user.primary_role, payload.comments, user.sub
    )
