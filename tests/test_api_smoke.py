from admissions.api import admin as admin_api

from conftest import auth

STAFF = auth("staff-1", "staff")
ADMIN = auth("root", "admin")
STUDENT = auth("stu-1", "student")
OTHER_STUDENT = auth("stu-2", "student")

EXAM = {
    "course_id": 3, "discipline_id": 1, "name": "Algorithms final",
    "exam_date": "2025-03-08T09:00:00", "duration_minutes": 90, "type": "mixed",
    "questions": [
        {"text": "Big-O of binary search?", "type": "multiple_choice", "score": 10,
         "options": ["O(n)", "O(log n)"], "correct_answer": "O(log n)"},
        {"text": "Quicksort is stable", "type": "true_false", "score": 10, "correct_answer": "false"},
    ],
}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200 and r.json()["status"] == "ok"


def test_metrics_exposed(client):
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200 and "http_request" in r.text


def test_mock_login_token_is_accepted(client, catalog):
    r = client.post("/v1/auth/mock-login", json={"user_id": "tester", "roles": ["staff"]})
    assert r.status_code == 200
    hdr = {"Authorization": f"Bearer {r.json()['access_token']}"}
    assert client.get("/v1/enrollments", headers=hdr).status_code == 200


def test_full_attempt(client, catalog):
    r = client.post("/v1/exams", json=EXAM, headers=STAFF)
    assert r.status_code == 201, r.text
    exam = r.json()
    q1, q2 = [q["id"] for q in exam["questions"]]
    assert exam["questions"][0]["correct_answer"] == "O(log n)"

    r = client.post("/v1/candidates", json={"first_name": "Ana", "email": "ana@example.org"}, headers=STUDENT)
    assert r.status_code == 201 and r.json()["user_id"] == "stu-1"
    candidate_id = r.json()["id"]

    r = client.post("/v1/enrollments", json={"candidate_id": candidate_id, "course_id": 3}, headers=STUDENT)
    assert r.status_code == 201
    enrollment = r.json()
    assert (enrollment["status"], enrollment["code"]) == ("pending", "3-2025-0001")
    eid = enrollment["id"]

    r = client.post(f"/v1/enrollments/{eid}/transition", json={"target_status": "approved"}, headers=STUDENT)
    assert r.status_code == 403 and r.json()["error"]["code"] == "Forbidden"
    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/open", headers=STUDENT)
    assert r.status_code == 409 and r.json()["error"]["code"] == "EnrollmentNotApproved"

    r = client.post(f"/v1/enrollments/{eid}/transition", json={"target_status": "approved"}, headers=STAFF)
    assert r.status_code == 200 and r.json()["status"] == "approved"
    r = client.post(f"/v1/enrollments/{eid}/transition", json={"target_status": "pending"}, headers=STAFF)
    assert r.status_code == 409 and r.json()["error"]["kind"] == "state_conflict"

    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/open", headers=OTHER_STUDENT)
    assert r.status_code == 403
    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/open", headers=STUDENT)
    assert r.status_code == 200
    session = r.json()
    assert session["deadline"].startswith("2025-03-01T10:30")
    assert all("correct_answer" not in q for q in session["questions"])

    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/answers", json={"question_id": q1, "value": " o(LOG n) "},
                    headers=STUDENT)
    assert r.status_code == 200 and "is_correct" not in r.json()
    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/answers", json={"question_id": q2, "value": "true"},
                    headers=STUDENT)
    assert r.status_code == 200
    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/answers", json={"question_id": 9999, "value": "x"},
                    headers=STUDENT)
    assert r.status_code == 400 and r.json()["error"]["code"] == "QuestionMismatch"

    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/close", json={"trigger": "manual"}, headers=STUDENT)
    assert r.status_code == 200
    closed = r.json()
    assert closed["graded"] is True
    assert (closed["result"]["total_score_obtained"], closed["result"]["grade"]) == (10.0, "approved")
    assert client.post(f"/v1/sessions/{eid}/{exam['id']}/close", headers=STUDENT).json() == closed

    r = client.post(f"/v1/sessions/{eid}/{exam['id']}/answers", json={"question_id": q2, "value": "false"},
                    headers=STUDENT)
    assert r.status_code == 409 and r.json()["error"]["code"] == "SessionClosed"

    r = client.get(f"/v1/results/enrollments/{eid}", headers=STUDENT)
    assert [row["grade"] for row in r.json()] == ["approved"]
    r = client.get(f"/v1/results/enrollments/{eid}/exams/{exam['id']}/answers", headers=STUDENT)
    assert [(a["question_id"], a["is_correct"]) for a in r.json()] == [(q1, True), (q2, False)]
    r = client.get(f"/v1/results/exams/{exam['id']}", headers=STAFF)
    assert [row["enrollment_id"] for row in r.json()] == [eid]

    r = client.post(f"/v1/admin/exams/{exam['id']}/grade_all", headers=ADMIN)
    assert r.status_code == 200 and r.json()["graded"] == [eid]
    r = client.get(f"/v1/exams/{exam['id']}/second-call/{eid}", headers=STUDENT)
    assert r.json()["reason"] == "not_offered"


def test_error_shapes(client, catalog):
    r = client.get("/v1/exams/999", headers=STAFF)
    assert r.status_code == 404
    assert r.json()["error"] == {"code": "ExamNotFound", "kind": "not_found",
                                 "message": "Exam 999 not found", "details": {"exam_id": 999}}

    bad = dict(EXAM, duration_minutes=0, questions=[])
    r = client.post("/v1/exams", json=bad, headers=STAFF)
    assert r.status_code == 400
    fields = {v["field"] for v in r.json()["error"]["details"]["violations"]}
    assert fields == {"duration_minutes", "questions"}

    r = client.post("/v1/exams", json=EXAM, headers=STUDENT)
    assert r.status_code == 403
    assert r.json()["error"] == {"code": "Forbidden", "kind": "forbidden", "message": "Insufficient role",
                                 "details": {"required": ["admin", "staff"]}}


def test_question_bank_endpoints(client, catalog):
    exam = client.post("/v1/exams", json=EXAM, headers=STAFF).json()
    r = client.post(f"/v1/exams/{exam['id']}/questions",
                    json={"text": "Heap property holds", "type": "true_false", "score": 5, "correct_answer": "True"},
                    headers=STAFF)
    assert r.status_code == 201 and r.json()["correct_answer"] == "true"
    qid = r.json()["id"]
    assert client.delete(f"/v1/exams/questions/{qid}", headers=STAFF).status_code == 204

    r = client.patch(f"/v1/exams/{exam['id']}/schedule",
                     json={"second_call_eligible": True, "second_call_date": "2025-03-20T09:00:00"}, headers=STAFF)
    assert r.status_code == 200 and r.json()["second_call_eligible"] is True
    r = client.get("/v1/exams/upcoming", headers=STUDENT)
    assert [e["id"] for e in r.json()] == [exam["id"]]


def test_documents_endpoints(client, catalog):
    cand = client.post("/v1/candidates", json={"first_name": "Ana", "email": "ana@example.org"}, headers=STUDENT).json()
    eid = client.post("/v1/enrollments", json={"candidate_id": cand["id"], "course_id": 3}, headers=STUDENT).json()["id"]

    r = client.post(f"/v1/enrollments/{eid}/documents", json={"type": "transcript", "path": "s3://docs/t.pdf"},
                    headers=STUDENT)
    assert r.status_code == 201 and r.json()["validation_status"] == "pending"
    doc_id = r.json()["id"]
    assert client.post(f"/v1/enrollments/documents/{doc_id}/review", json={"validation_status": "valid"},
                       headers=STUDENT).status_code == 403
    r = client.post(f"/v1/enrollments/documents/{doc_id}/review", json={"validation_status": "valid"}, headers=STAFF)
    assert r.json()["validation_status"] == "valid"
    assert client.get(f"/v1/enrollments/{eid}/documents", headers=OTHER_STUDENT).status_code == 403


def test_async_grading_is_queued(client, catalog, monkeypatch):
    exam = client.post("/v1/exams", json=EXAM, headers=STAFF).json()
    enqueued = []

    class FakeJob:
        def get_id(self):
            return "job-42"

    class FakeQueue:
        def enqueue(self, func, *args, **kwargs):
            enqueued.append((func.__name__, args, kwargs))
            return FakeJob()

    monkeypatch.setattr(admin_api, "queue", FakeQueue())
    r = client.post(f"/v1/admin/exams/{exam['id']}/grade_all/start", json={"regrade": True}, headers=ADMIN)
    assert r.json() == {"job_id": "job-42", "exam_id": exam["id"]}
    assert enqueued == [("grade_all_job", (exam["id"], True, "root"), {"job_timeout": 3600})]

    assert client.post("/v1/admin/exams/999/grade_all/start", headers=ADMIN).status_code == 404
    assert client.post("/v1/admin/sessions/sweep", headers=ADMIN).json() == {"closed": []}


def test_student_cannot_claim_a_timeout_close(client, services, make_exam, make_enrollment):
    exam = make_exam()
    mine = make_enrollment(user_id="stu-1")
    other = make_enrollment()
    for enrollment, headers in ((mine, STUDENT), (other, STAFF)):
        client.post(f"/v1/sessions/{enrollment.id}/{exam.id}/open", headers=headers)
        r = client.post(f"/v1/sessions/{enrollment.id}/{exam.id}/close", json={"trigger": "timeout"}, headers=headers)
        assert r.status_code == 200

    assert services.sessions.load_state(mine.id, exam.id).trigger == "manual"
    assert services.sessions.load_state(other.id, exam.id).trigger == "timeout"
