from fastapi import APIRouter
from pydantic import BaseModel
from typing import List
from admissions.core.auth import create_token

router = APIRouter()

class MockLogin(BaseModel):
    user_id: str
    roles: List[str]

@router.post("/mock-login")
def mock_login(payload: MockLogin):
    """Development login: issues a bearer token for any user id and roles."""
    token = create_token(payload.user_id, payload.roles)
    return {"access_token": token, "token_type": "bearer", "roles": payload.roles}
