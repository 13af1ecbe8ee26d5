"""
Explicit wiring of storage handles into the domain services.

Handles are opened once at process start (API lifespan, rq worker) and released
by ``Services.close`` on shutdown.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import redis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from admissions.core.cache import SessionRegistry, make_redis
from admissions.core.clock import utcnow
from admissions.core.config import settings
from admissions.core.database import close_db, init_db, make_engine, make_session_factory
from admissions.services.enrollment import EnrollmentService
from admissions.services.grading import GradingEngine
from admissions.services.ledger import AnswerLedger
from admissions.services.reports import ReportingService
from admissions.services.scheduler import ExamScheduler
from admissions.services.sessions import SubmissionSessions

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: Engine
    session_factory: sessionmaker
    redis_client: redis.Redis
    enrollments: EnrollmentService
    scheduler: ExamScheduler
    ledger: AnswerLedger
    grading: GradingEngine
    sessions: SubmissionSessions
    reports: ReportingService

    def close(self) -> None:
        close_db(self.engine)
        self.redis_client.close()


def build_services(database_url: Optional[str] = None, redis_client: Optional[redis.Redis] = None,
                   clock: Callable[[], datetime] = utcnow, create_schema: bool = True) -> Services:
    engine = make_engine(database_url, echo=settings.DATABASE_ECHO)
    if create_schema:
        init_db(engine)
    factory = make_session_factory(engine)
    client = redis_client if redis_client is not None else make_redis()
    registry = SessionRegistry(client, settings.SESSION_RETENTION_SECONDS)

    ledger = AnswerLedger(factory, clock)
    grading = GradingEngine(factory, clock)
    return Services(
        engine=engine,
        session_factory=factory,
        redis_client=client,
        enrollments=EnrollmentService(factory, clock),
        scheduler=ExamScheduler(factory, clock),
        ledger=ledger,
        grading=grading,
        sessions=SubmissionSessions(factory, registry, ledger, grading, clock),
        reports=ReportingService(factory, clock),
    )
