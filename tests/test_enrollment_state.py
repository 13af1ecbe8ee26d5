import itertools

import pytest
from sqlalchemy import select

from admissions.core import errors
from admissions.models.orm import AuditLog, DocumentStatus, EnrollmentStatus
from admissions.services.enrollment import TRANSITIONS, can_transition

P, A, R, C = (EnrollmentStatus.PENDING, EnrollmentStatus.APPROVED,
              EnrollmentStatus.REJECTED, EnrollmentStatus.COMPLETED)
LEGAL = {(P, A), (P, R), (A, C)}


def test_transition_table_has_exactly_the_documented_edges():
    edges = {(src, dst) for src, targets in TRANSITIONS.items() for dst in targets}
    assert edges == LEGAL
    for src, dst in itertools.product(EnrollmentStatus, repeat=2):
        assert can_transition(src, dst) == ((src, dst) in LEGAL)


def test_register_candidate_rejects_duplicate_email(services):
    services.enrollments.register_candidate("Ana", "Ana@Example.org")
    with pytest.raises(errors.DuplicateEmail):
        services.enrollments.register_candidate("Ana B", " ana@example.org ")


def test_register_candidate_validates_fields(services):
    with pytest.raises(errors.ValidationError) as exc:
        services.enrollments.register_candidate("", "not-an-email")
    fields = {v.field for v in exc.value.violations}
    assert fields == {"first_name", "email"}


def test_submit_enrollment_starts_pending(services, catalog):
    cand = services.enrollments.register_candidate("Ana", "ana@example.org")
    enrollment = services.enrollments.submit_enrollment(cand.id, catalog["course_id"])
    assert enrollment.status is EnrollmentStatus.PENDING
    assert enrollment.code.startswith("3-2025-")


def test_one_enrollment_per_email(services, catalog):
    cand = services.enrollments.register_candidate("Ana", "ana@example.org")
    services.enrollments.submit_enrollment(cand.id, catalog["course_id"])
    with pytest.raises(errors.DuplicateEmail):
        services.enrollments.submit_enrollment(cand.id, catalog["other_course_id"])


def test_submit_enrollment_unknown_references(services, catalog):
    cand = services.enrollments.register_candidate("Ana", "ana@example.org")
    with pytest.raises(errors.CourseNotFound):
        services.enrollments.submit_enrollment(cand.id, 999)
    with pytest.raises(errors.CandidateNotFound):
        services.enrollments.submit_enrollment(999, catalog["course_id"])


@pytest.mark.parametrize("path", [(A,), (R,), (A, C)])
def test_legal_paths(make_enrollment, services, path):
    enrollment = make_enrollment(status=P)
    for target in path:
        enrollment = services.enrollments.transition(enrollment.id, target, "staff")
    assert enrollment.status is path[-1]


@pytest.mark.parametrize("start,target", [
    (P, C), (P, P), (A, R), (A, P), (A, A), (R, A), (R, P), (R, C), (C, P), (C, A), (C, R),
])
def test_illegal_edges(make_enrollment, services, start, target):
    enrollment = make_enrollment(status=start)
    with pytest.raises(errors.IllegalTransition):
        services.enrollments.transition(enrollment.id, target, "admin")
    assert services.enrollments.get(enrollment.id).status is start


def test_any_sequence_only_follows_edges(make_enrollment, services):
    for sequence in itertools.product([A, R, C, P], repeat=3):
        enrollment = make_enrollment(status=P)
        history = [P]
        for target in sequence:
            try:
                services.enrollments.transition(enrollment.id, target, "staff")
                history.append(target)
            except errors.IllegalTransition:
                pass
        for src, dst in zip(history, history[1:]):
            assert (src, dst) in LEGAL
        assert services.enrollments.get(enrollment.id).status is history[-1]


@pytest.mark.parametrize("role", ["student", "candidate", ""])
def test_only_staff_may_transition(make_enrollment, services, role):
    enrollment = make_enrollment(status=P)
    with pytest.raises(errors.Forbidden):
        services.enrollments.transition(enrollment.id, A, role)


def test_transition_unknown_enrollment_and_status(services):
    with pytest.raises(errors.NotFound):
        services.enrollments.transition(4242, A, "admin")
    with pytest.raises(errors.ValidationError):
        services.enrollments.transition(4242, "graduated", "admin")


def test_transition_touches_updated_at_and_audits(make_enrollment, services, clock):
    enrollment = make_enrollment(status=P)
    clock.advance(hours=2)
    updated = services.enrollments.transition(enrollment.id, A, "staff", actor_id="staff-1")
    assert updated.updated_at == clock()
    assert updated.enrolled_at == enrollment.enrolled_at

    with services.session_factory() as db:
        rows = db.scalars(select(AuditLog).where(
            AuditLog.entity_type == "enrollment", AuditLog.action == "transition_enrollment"
        )).all()
    assert [(r.user_id, r.changes["from"], r.changes["to"]) for r in rows] == [("staff-1", "pending", "approved")]


def test_list_enrollments_filters(make_enrollment, services):
    pending = make_enrollment(status=P)
    approved = make_enrollment(status=A)
    assert [e.id for e in services.enrollments.list(status="pending")] == [pending.id]
    assert {e.id for e in services.enrollments.list(course_id=3)} == {pending.id, approved.id}
    assert services.enrollments.list(course_id=4) == []


def test_documents_lifecycle(make_enrollment, services):
    enrollment = make_enrollment(status=P)
    doc = services.enrollments.attach_document(enrollment.id, "id_card", "/store/1/id.pdf")
    assert doc.validation_status is DocumentStatus.PENDING

    with pytest.raises(errors.Forbidden):
        services.enrollments.review_document(doc.id, "valid", "student")
    with pytest.raises(errors.ValidationError):
        services.enrollments.review_document(doc.id, "maybe", "staff")

    reviewed = services.enrollments.review_document(doc.id, "invalid", "staff", comments="blurry scan")
    assert reviewed.validation_status is DocumentStatus.INVALID
    assert reviewed.validation_comments == "blurry scan"
    assert [d.id for d in services.enrollments.list_documents(enrollment.id)] == [doc.id]

    with pytest.raises(errors.DocumentNotFound):
        services.enrollments.review_document(999, "valid", "admin")
    with pytest.raises(errors.ValidationError):
        services.enrollments.attach_document(enrollment.id, "", "")
