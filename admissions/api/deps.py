from fastapi import Request

from admissions.core import errors
from admissions.core.auth import TokenData
from admissions.services.container import Services

ANY_ROLE = ("admin", "staff", "candidate", "student")


def get_services(request: Request) -> Services:
    return request.app.state.services


def ensure_enrollment_access(services: Services, user: TokenData, enrollment_id: int):
    """Staff see every enrollment; everyone else only the ones linked to their user id."""
    if user.is_staff:
        return services.enrollments.get(enrollment_id)
    return services.enrollments.assert_owned_by(enrollment_id, user.sub)


def ensure_candidate_access(services: Services, user: TokenData, candidate_id: int):
    candidate = services.enrollments.get_candidate(candidate_id)
    if not user.is_staff and candidate.user_id != user.sub:
        raise errors.Forbidden("Candidate profile belongs to another user", candidate_id=candidate_id)
    return candidate
