"""Tests for the enrollment module: capacity, reactivation and the seat counter."""
import threading
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app.edulms import create_app
from app.edulms.db import session_scope
from app.edulms.models import AuditEvent, Base, User
from app.edulms.modules.enrollment.models import Course, Enrollment
from app.edulms.modules.enrollment.service import (
    AlreadyEnrolled,
    CourseFull,
    CourseInactive,
    CourseLoadExceeded,
    CourseNotStarted,
    EnrollmentCompleted,
    bulk_update_status,
    can_enroll,
    create_course,
    enroll,
    recount_course,
    update_status,
)

TODAY = date(2024, 3, 1)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(User(email="admin@example.com", password_hash=generate_password_hash("pw"), role="admin", is_active=True))
        for i in range(10):
            s.add(User(email=f"s{i}@example.com", password_hash=generate_password_hash("pw"), role="student", is_active=True))
    return app


def _student(s, i: int) -> User:
    return s.query(User).filter(User.email == f"s{i}@example.com").one()


def _course(s, *, code="CS101", max_students=3, start=date(2024, 1, 1), status="active") -> Course:
    return create_course(s, course_code=code, title="Intro", instructor=None, max_students=max_students, start_date=start, status=status)


def test_enroll_takes_a_seat(app):
    with session_scope(app) as s:
        course_id = _course(s).id
    with session_scope(app) as s:
        result = enroll(s, _student(s, 0), course_id, today=TODAY)
        assert result.reactivated is False
        assert result.enrollment.status == "active"
    with session_scope(app) as s:
        assert s.get(Course, course_id).current_students == 1
        actions = [a for (a,) in s.query(AuditEvent.action).all()]
        assert "enrollment.create" in actions


def test_double_enroll_is_already_enrolled(app):
    with session_scope(app) as s:
        course_id = _course(s).id
        enroll(s, _student(s, 0), course_id, today=TODAY)
    with session_scope(app) as s:
        with pytest.raises(AlreadyEnrolled):
            enroll(s, _student(s, 0), course_id, today=TODAY)
    with session_scope(app) as s:
        assert s.get(Course, course_id).current_students == 1


def test_full_course_rejects(app):
    with session_scope(app) as s:
        course_id = _course(s, max_students=1).id
        enroll(s, _student(s, 0), course_id, today=TODAY)
    with session_scope(app) as s:
        with pytest.raises(CourseFull) as exc:
            enroll(s, _student(s, 1), course_id, today=TODAY)
        assert exc.value.code == "course_full"


def test_inactive_and_unstarted_courses_reject(app):
    with session_scope(app) as s:
        inactive_id = _course(s, code="OLD1", status="inactive").id
        future_id = _course(s, code="NEW1", start=date(2030, 1, 1)).id
    with session_scope(app) as s:
        with pytest.raises(CourseInactive):
            enroll(s, _student(s, 0), inactive_id, today=TODAY)
        with pytest.raises(CourseNotStarted):
            enroll(s, _student(s, 0), future_id, today=TODAY)


def test_course_load_limit(app):
    with session_scope(app) as s:
        ids = [_course(s, code=f"C{i}").id for i in range(3)]
    with session_scope(app) as s:
        student = _student(s, 0)
        enroll(s, student, ids[0], max_course_load=2, today=TODAY)
        enroll(s, student, ids[1], max_course_load=2, today=TODAY)
        with pytest.raises(CourseLoadExceeded):
            enroll(s, student, ids[2], max_course_load=2, today=TODAY)


def test_can_enroll_matches_enroll(app):
    with session_scope(app) as s:
        course_id = _course(s, max_students=1).id
    with session_scope(app) as s:
        assert can_enroll(s, _student(s, 0), course_id, today=TODAY) == (True, None)
        enroll(s, _student(s, 0), course_id, today=TODAY)
    with session_scope(app) as s:
        assert can_enroll(s, _student(s, 0), course_id, today=TODAY) == (False, "already_enrolled")
        assert can_enroll(s, _student(s, 1), course_id, today=TODAY) == (False, "course_full")
        assert can_enroll(s, _student(s, 1), 9999, today=TODAY) == (False, "course_not_found")


def test_reactivation_reuses_the_row(app):
    with session_scope(app) as s:
        course_id = _course(s).id
        first = enroll(s, _student(s, 0), course_id, today=TODAY).enrollment.id
    with session_scope(app) as s:
        update_status(s, first, "dropped", reason="moved away")
    with session_scope(app) as s:
        assert s.get(Course, course_id).current_students == 0
        result = enroll(s, _student(s, 0), course_id, today=TODAY)
        assert result.reactivated is True
        assert result.enrollment.id == first
    with session_scope(app) as s:
        assert s.query(Enrollment).count() == 1
        assert s.get(Course, course_id).current_students == 1


def test_completed_enrollment_cannot_reenroll(app):
    with session_scope(app) as s:
        course_id = _course(s).id
        eid = enroll(s, _student(s, 0), course_id, today=TODAY).enrollment.id
    with session_scope(app) as s:
        e = update_status(s, eid, "completed", final_grade="A", grade_points=4.0)
        assert e.completion_date is not None
    with session_scope(app) as s:
        with pytest.raises(EnrollmentCompleted):
            enroll(s, _student(s, 0), course_id, today=TODAY)


def test_status_changes_keep_counter_consistent(app):
    with session_scope(app) as s:
        course_id = _course(s, max_students=5).id
        eids = [enroll(s, _student(s, i), course_id, today=TODAY).enrollment.id for i in range(3)]

    with session_scope(app) as s:
        update_status(s, eids[0], "inactive")
        # inactive -> dropped is outside active; no counter change
        update_status(s, eids[0], "dropped")
        update_status(s, eids[1], "completed", final_grade="B", grade_points=3.0)
        update_status(s, eids[2], "active")

    with session_scope(app) as s:
        live = s.query(Enrollment).filter(Enrollment.course_id == course_id, Enrollment.status == "active").count()
        assert live == 1
        assert s.get(Course, course_id).current_students == live


def test_bulk_status_tallies_failures(app):
    with session_scope(app) as s:
        course_id = _course(s).id
        eid = enroll(s, _student(s, 0), course_id, today=TODAY).enrollment.id
    with session_scope(app) as s:
        outcome = bulk_update_status(s, [eid, 424242], "inactive")
    assert outcome.succeeded == [eid]
    assert outcome.failed == {424242: "enrollment_not_found"}


def test_recount_repairs_drift(app):
    with session_scope(app) as s:
        course_id = _course(s).id
        enroll(s, _student(s, 0), course_id, today=TODAY)
    with session_scope(app) as s:
        s.get(Course, course_id).current_students = 3
    with session_scope(app) as s:
        assert recount_course(s, course_id) == 1
    with session_scope(app) as s:
        assert s.get(Course, course_id).current_students == 1
        assert s.query(AuditEvent).filter(AuditEvent.action == "course.counter_repaired").count() == 1


def test_concurrent_enrollment_never_oversubscribes(app):
    with session_scope(app) as s:
        course_id = _course(s, max_students=3).id
        student_ids = [_student(s, i).id for i in range(10)]

    results: dict[int, str] = {}
    barrier = threading.Barrier(len(student_ids))

    def _worker(student_id: int) -> None:
        barrier.wait()
        try:
            with session_scope(app) as s:
                enroll(s, s.get(User, student_id), course_id, today=TODAY)
            results[student_id] = "ok"
        except CourseFull:
            results[student_id] = "course_full"

    threads = [threading.Thread(target=_worker, args=(sid,)) for sid in student_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(results.values()).count("ok") == 3
    assert list(results.values()).count("course_full") == 7
    with session_scope(app) as s:
        assert s.get(Course, course_id).current_students == 3
        assert s.query(Enrollment).filter(Enrollment.course_id == course_id).count() == 3


def test_enroll_endpoint(app):
    client = app.test_client()
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    headers = {"X-CSRF-Token": r.json["csrf_token"]}

    r = client.post(
        "/api/courses",
        json={"course_code": "cs200", "title": "Data Structures", "max_students": 2, "start_date": "2024-01-01"},
        headers=headers,
    )
    assert r.status_code == 201
    course_id = r.json["id"]
    assert r.json["course_code"] == "CS200"

    with session_scope(app) as s:
        sid = _student(s, 0).id

    r = client.post(f"/api/courses/{course_id}/enroll", json={"student_id": sid}, headers=headers)
    assert r.status_code == 201
    assert r.json["reactivated"] is False

    r = client.post(f"/api/courses/{course_id}/enroll", json={"student_id": sid}, headers=headers)
    assert r.status_code == 409
    assert r.json["error"] == "already_enrolled"

    r = client.get(f"/api/courses/{course_id}")
    assert r.json["current_students"] == 1

    r = client.post(f"/api/courses/{course_id}/status", json={"status": "inactive"}, headers=headers)
    assert r.status_code == 200
    assert r.json["status"] == "inactive"

    r = client.post(f"/api/courses/{course_id}/status", json={"status": "bogus"}, headers=headers)
    assert r.status_code == 400
    assert r.json["error"] == "invalid_course"


def test_enrollment_endpoints_reject_malformed_ids(app):
    client = app.test_client()
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    headers = {"X-CSRF-Token": r.json["csrf_token"]}
    with session_scope(app) as s:
        course_id = _course(s).id
        enrollment_id = enroll(s, _student(s, 0), course_id, today=TODAY).enrollment.id

    r = client.post(f"/api/courses/{course_id}/enroll", json={"student_id": "abc"}, headers=headers)
    assert r.status_code == 400
    assert r.json["error"] == "validation_failed"

    r = client.post(
        "/api/courses",
        json={"course_code": "cs300", "title": "Compilers", "max_students": 5, "start_date": "2024-01-01", "credits": "three"},
        headers=headers,
    )
    assert r.status_code == 400

    r = client.post(
        "/api/courses",
        json={"course_code": "cs301", "title": "Networks", "max_students": 5, "start_date": "2024-01-01", "instructor_id": "prof"},
        headers=headers,
    )
    assert r.status_code == 400

    r = client.post("/api/enrollments/bulk-status", json={"enrollment_ids": [enrollment_id, "abc"], "status": "dropped"}, headers=headers)
    assert r.status_code == 200
    assert r.json["succeeded"] == [enrollment_id]
    assert r.json["failed"] == {"abc": "invalid_id"}
