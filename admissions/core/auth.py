from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List
import jwt
from datetime import datetime, timedelta, timezone
from admissions.core import errors
from admissions.core.config import settings

STAFF_ROLES = ("admin", "staff")


class TokenData(BaseModel):
    sub: str
    roles: List[str]

    @property
    def is_staff(self) -> bool:
        return bool(set(self.roles).intersection(STAFF_ROLES))

    @property
    def primary_role(self) -> str:
        for role in ("admin", "staff", "student", "candidate"):
            if role in self.roles:
                return role
        return self.roles[0] if self.roles else ""


bearer = HTTPBearer()


def create_token(user_id: str, roles: List[str], ttl_minutes: int = settings.ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp())}
    return jwt.encode(payload, settings.APP_SECRET.get_secret_value(), algorithm="HS256")


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.APP_SECRET.get_secret_value(), algorithms=["HS256"])
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return TokenData(sub=str(payload["sub"]), roles=payload.get("roles", []))


def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        if not set(user.roles).intersection(required):
            raise errors.Forbidden("Insufficient role", required=list(required))
        return user
    return checker
