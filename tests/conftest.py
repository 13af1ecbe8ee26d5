import fnmatch
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from admissions.core.auth import create_token
from admissions.main import create_app
from admissions.models.orm import Course, Discipline, EnrollmentStatus
from admissions.services.container import build_services
from admissions.services.scheduler import ExamDraft, QuestionDraft

START = datetime(2025, 3, 1, 9, 0, 0)


class FakeRedis:
    """The slice of redis.Redis the session registry uses, kept in a dict."""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    def get(self, key):
        return self.store.get(key)

    def scan_iter(self, match="*"):
        return [k for k in list(self.store) if fnmatch.fnmatchcase(k, match)]

    def close(self):
        pass


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def services(tmp_path, clock, fake_redis):
    svc = build_services(f"sqlite:///{tmp_path / 'admissions.db'}", redis_client=fake_redis, clock=clock)
    yield svc
    svc.close()


@pytest.fixture
def catalog(services):
    with services.session_factory.begin() as db:
        db.add_all([
            Course(id=3, name="Computer Science"),
            Course(id=4, name="Mathematics"),
        ])
        db.flush()
        db.add_all([
            Discipline(id=1, course_id=3, name="Algorithms", code="CS-ALG"),
            Discipline(id=2, course_id=4, name="Calculus", code="MA-CAL"),
        ])
    return {"course_id": 3, "discipline_id": 1, "other_course_id": 4, "other_discipline_id": 2}


@pytest.fixture
def make_enrollment(services, catalog):
    counter = {"n": 0}

    def _make(status=EnrollmentStatus.APPROVED, user_id=None, course_id=None):
        counter["n"] += 1
        n = counter["n"]
        candidate = services.enrollments.register_candidate(
            f"Student{n}", f"student{n}@example.org", "Tester", user_id=user_id or f"user-{n}"
        )
        enrollment = services.enrollments.submit_enrollment(candidate.id, course_id or catalog["course_id"])
        if status in (EnrollmentStatus.APPROVED, EnrollmentStatus.COMPLETED):
            enrollment = services.enrollments.transition(enrollment.id, EnrollmentStatus.APPROVED, "staff")
        if status is EnrollmentStatus.COMPLETED:
            enrollment = services.enrollments.transition(enrollment.id, EnrollmentStatus.COMPLETED, "admin")
        if status is EnrollmentStatus.REJECTED:
            enrollment = services.enrollments.transition(enrollment.id, EnrollmentStatus.REJECTED, "staff")
        return enrollment

    return _make


def question(answer="B", score=10.0, options=("A", "B", "C"), text="Pick one"):
    return QuestionDraft(text=text, type="multiple_choice", score=score, options=list(options), correct_answer=answer)


@pytest.fixture
def make_exam(services, catalog, clock):
    def _make(questions=None, duration_minutes=60, **overrides):
        fields = dict(
            course_id=catalog["course_id"], discipline_id=catalog["discipline_id"], name="Algorithms midterm",
            exam_date=clock() + timedelta(days=7), duration_minutes=duration_minutes, type="objective",
            questions=questions if questions is not None else [question("B"), question("C")],
        )
        fields.update(overrides)
        return services.scheduler.schedule_exam(ExamDraft(**fields))

    return _make


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def auth(user_id, *roles):
    return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}


def answer_all(services, enrollment, exam, answers):
    """Record ``answers`` in question order; ``None`` leaves a question unanswered."""
    for q, value in zip(exam.questions, answers):
        if value is not None:
            services.ledger.upsert_answer(enrollment.id, exam.id, q.id, value)
