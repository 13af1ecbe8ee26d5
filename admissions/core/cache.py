"""
Redis cache of in-progress submission sessions. The exam_attempts table is the
record of truth; these keys let answer writes skip the database round trip.

``exam_session:{enrollment_id}:{exam_id}`` holds the countdown, written once with
SET NX on first open so the deadline never moves. ``exam_session_closed:...`` is
written once on close. Both expire ``SESSION_RETENTION_SECONDS`` after the
deadline.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import redis

from admissions.core.config import settings

SESSION_PREFIX = "exam_session"
CLOSED_PREFIX = "exam_session_closed"


def make_redis(url: Optional[str] = None) -> redis.Redis:
    return redis.Redis.from_url(url or settings.REDIS_URL, decode_responses=True)


def session_key(enrollment_id: int, exam_id: int) -> str:
    return f"{SESSION_PREFIX}:{enrollment_id}:{exam_id}"


def closed_key(enrollment_id: int, exam_id: int) -> str:
    return f"{CLOSED_PREFIX}:{enrollment_id}:{exam_id}"


@dataclass
class SessionState:
    enrollment_id: int
    exam_id: int
    opened_at: datetime
    deadline: datetime
    closed_at: Optional[datetime] = None
    trigger: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    def expired(self, now: datetime) -> bool:
        return now > self.deadline


class SessionRegistry:
    def __init__(self, client: redis.Redis, retention_seconds: int = settings.SESSION_RETENTION_SECONDS):
        self.redis = client
        self.retention_seconds = retention_seconds

    def _ttl(self, now: datetime, deadline: datetime) -> int:
        return max(int((deadline - now).total_seconds()), 0) + self.retention_seconds

    def open(self, enrollment_id: int, exam_id: int, opened_at: datetime, deadline: datetime) -> SessionState:
        """Start the countdown on first open; later opens return the original state."""
        payload = {
            "enrollment_id": enrollment_id,
            "exam_id": exam_id,
            "opened_at": opened_at.isoformat(),
            "deadline": deadline.isoformat(),
        }
        self.redis.set(session_key(enrollment_id, exam_id), json.dumps(payload), nx=True, ex=self._ttl(opened_at, deadline))
        return self.get(enrollment_id, exam_id)

    def get(self, enrollment_id: int, exam_id: int) -> Optional[SessionState]:
        raw = self.redis.get(session_key(enrollment_id, exam_id))
        if not raw:
            return None
        data = json.loads(raw)
        state = SessionState(
            enrollment_id=int(data["enrollment_id"]),
            exam_id=int(data["exam_id"]),
            opened_at=datetime.fromisoformat(data["opened_at"]),
            deadline=datetime.fromisoformat(data["deadline"]),
        )
        closed = self.redis.get(closed_key(enrollment_id, exam_id))
        if closed:
            info = json.loads(closed)
            state.closed_at = datetime.fromisoformat(info["closed_at"])
            state.trigger = info.get("trigger")
        return state

    def close(self, state: SessionState, trigger: str, closed_at: datetime) -> bool:
        """Mark the session closed. Returns False when another caller closed it first."""
        payload = json.dumps({"closed_at": closed_at.isoformat(), "trigger": trigger})
        written = self.redis.set(
            closed_key(state.enrollment_id, state.exam_id), payload, nx=True,
            ex=self._ttl(closed_at, state.deadline),
        )
        return bool(written)
