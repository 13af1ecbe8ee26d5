from admissions.jobs import grading_job

from conftest import answer_all


class FakeJob:
    id = "job-1"

    def __init__(self):
        self.meta = {}
        self.saved = []

    def save_meta(self):
        self.saved.append(dict(self.meta))


def test_grade_all_job_reports_progress(make_exam, make_enrollment, services, monkeypatch):
    exam = make_exam()
    for answers in (["B", "C"], ["A", "A"]):
        answer_all(services, make_enrollment(), exam, answers)
    job = FakeJob()
    monkeypatch.setattr(grading_job, "get_current_job", lambda: job)
    monkeypatch.setattr(grading_job, "worker_services", lambda: services)

    result = grading_job.grade_all_job(exam.id)

    assert len(result["graded"]) == 2 and result["failed"] == []
    assert job.meta["state"] == "done"
    assert [(m["done"], m["total"]) for m in job.saved if m.get("total")] == [(1, 2), (2, 2), (2, 2)]


def test_sweep_job_reschedules_itself(make_exam, make_enrollment, services, clock, monkeypatch):
    exam = make_exam(duration_minutes=5)
    enrollment = make_enrollment()
    services.sessions.open_session(enrollment.id, exam.id)
    clock.advance(minutes=6)

    scheduled = []

    class FakeQueue:
        def enqueue_in(self, delay, func):
            scheduled.append((delay.total_seconds(), func))

    monkeypatch.setattr(grading_job, "worker_services", lambda: services)
    monkeypatch.setattr(grading_job, "queue", FakeQueue())

    assert grading_job.sweep_sessions_job() == {"closed": [[enrollment.id, exam.id]]}
    assert scheduled == [(60.0, grading_job.sweep_sessions_job)]
    assert grading_job.sweep_sessions_job(reschedule=False) == {"closed": []}
    assert len(scheduled) == 1
