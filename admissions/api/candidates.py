from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime
from admissions.api.deps import ANY_ROLE, ensure_candidate_access, get_services
from admissions.core.auth import require_roles, TokenData
from admissions.services.container import Services

router = APIRouter()

class CandidateCreate(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    email: str
    phone: Optional[str] = None
    user_id: Optional[str] = None

class CandidateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int; first_name: str; last_name: Optional[str] = None; email: str
    phone: Optional[str] = None; user_id: Optional[str] = None; created_at: datetime

@router.post("", response_model=CandidateOut, status_code=201)
def register_candidate(payload: CandidateCreate, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                       services: Services = Depends(get_services)):
    # applicants register themselves; staff may register on behalf of any user id
    user_id = payload.user_id if user.is_staff else user.sub
    return services.enrollments.register_candidate(
        payload.first_name, payload.email, payload.last_name, payload.phone, user_id
    )

@router.get("/{candidate_id}", response_model=CandidateOut)
def get_candidate(candidate_id: int, user: TokenData = Depends(require_roles(*ANY_ROLE)),
                  services: Services = Depends(get_services)):
    return ensure_candidate_access(services, user, candidate_id)
