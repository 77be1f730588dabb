"""Tests for the grading engine: banding, upsert, invalidation and course aggregates."""
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.edulms import create_app
from app.edulms.db import session_scope
from app.edulms.errors import NotAuthorized
from app.edulms.models import AuditEvent, Base, User
from app.edulms.modules.assignments.models import Submission
from app.edulms.modules.assignments.service import (
    SubmissionPayload,
    accept_submission,
    create_assignment,
    publish_assignment,
    resubmit_and_invalidate_grade,
)
from app.edulms.modules.enrollment.models import Course, Enrollment
from app.edulms.modules.enrollment.service import create_course, enroll
from app.edulms.modules.grading.models import Grade
from app.edulms.modules.grading.service import (
    InvalidPoints,
    NothingToFinalize,
    PointsOutOfRange,
    compute_course_aggregate,
    finalize_enrollment,
    get_grade,
    grade_points_for_percentage,
    grade_submission,
    letter_for_grade_points,
)
from app.edulms.notifications import Notifier, set_notifier

DUE = datetime(2024, 4, 1, 12, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[int, str, dict]] = []

    def notify(self, user_id, kind, payload):
        self.sent.append((user_id, kind, payload))


@pytest.fixture()
def notifier():
    rec = RecordingNotifier()
    previous = set_notifier(rec)
    yield rec
    set_notifier(previous)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        prof = User(email="prof@example.com", password_hash=generate_password_hash("pw"), role="instructor", is_active=True)
        other = User(email="other@example.com", password_hash=generate_password_hash("pw"), role="instructor", is_active=True)
        students = [
            User(email=f"s{i}@example.com", password_hash=generate_password_hash("pw"), role="student", is_active=True)
            for i in range(2)
        ]
        s.add_all([prof, other, *students])
        s.flush()
        course = create_course(s, course_code="MA101", title="Calculus", instructor=prof, max_students=10, start_date=date(2024, 1, 1))
        for st in students:
            enroll(s, st, course.id, today=date(2024, 2, 1))
        app.config["TEST_COURSE_ID"] = course.id
    return app


def _user(s, email: str) -> User:
    return s.query(User).filter(User.email == email).one()


def _submitted(app, *, max_points=100, students=("s0@example.com",), title="Quiz") -> tuple[int, list[int]]:
    """Published assignment plus one submission per student; returns (assignment_id, submission_ids)."""
    with session_scope(app) as s:
        prof = _user(s, "prof@example.com")
        a = create_assignment(s, app.config["TEST_COURSE_ID"], title=title, max_points=max_points, due_date=DUE, user=prof)
        publish_assignment(s, a.id, user=prof)
        ids = [
            accept_submission(s, a.id, _user(s, email), SubmissionPayload(text="answer"), now=DUE - timedelta(hours=1)).submission.id
            for email in students
        ]
        return a.id, ids


@pytest.mark.parametrize(
    "percentage,letter,points",
    [
        ("100", "A", 4.0),
        ("90", "A", 4.0),
        ("89.9", "A-", 3.7),
        ("85", "A-", 3.7),
        ("74.99", "B-", 2.7),
        ("50", "D+", 1.3),
        ("49.9", "D", 1.0),
        ("45", "D", 1.0),
        ("44.99", "F", 0.0),
        ("0", "F", 0.0),
    ],
)
def test_grade_banding(percentage, letter, points):
    assert grade_points_for_percentage(Decimal(percentage)) == (letter, points)


def test_letter_for_mean_grade_points():
    assert letter_for_grade_points(Decimal("4.00")) == "A"
    assert letter_for_grade_points(Decimal("3.85")) == "A-"
    assert letter_for_grade_points(Decimal("0.50")) == "F"


def test_grade_band_edge_through_service(app, notifier):
    _, (sid,) = _submitted(app, max_points=1000)
    with session_scope(app) as s:
        result = grade_submission(s, sid, "899", grader=_user(s, "prof@example.com"))
        assert result.created is True
        assert result.percentage == Decimal("89.9")
        assert (result.letter_grade, result.grade_points) == ("A-", 3.7)
    with session_scope(app) as s:
        assert s.get(Submission, sid).status == "graded"
    graded = [p for _, kind, p in notifier.sent if kind == "submission.graded"]
    assert len(graded) == 1 and graded[0]["submission_id"] == sid


def test_band_uses_unrounded_percentage(app):
    _, (sid,) = _submitted(app, max_points=200)
    with session_scope(app) as s:
        result = grade_submission(s, sid, "179.99", grader=_user(s, "prof@example.com"))
        assert result.percentage == Decimal("89.995")
        assert result.display_percentage == Decimal("90.00")
        assert (result.letter_grade, result.grade_points) == ("A-", 3.7)
    with session_scope(app) as s:
        grade = get_grade(s, sid)
        assert grade.points_earned == Decimal("179.99")
        assert grade.letter_grade == "A-"


def test_points_precision_beyond_stored_scale_rejected(app):
    _, (sid,) = _submitted(app, max_points=200)
    with session_scope(app) as s:
        with pytest.raises(InvalidPoints):
            grade_submission(s, sid, "179.9999", grader=_user(s, "prof@example.com"))
    with session_scope(app) as s:
        assert get_grade(s, sid) is None


def test_regrade_overwrites_single_row(app):
    _, (sid,) = _submitted(app)
    with session_scope(app) as s:
        grade_submission(s, sid, 40, grader=_user(s, "prof@example.com"))
    with session_scope(app) as s:
        result = grade_submission(s, sid, 95, feedback="Much better", grader=_user(s, "prof@example.com"))
        assert result.created is False
        assert result.letter_grade == "A"
    with session_scope(app) as s:
        grades = s.query(Grade).filter(Grade.submission_id == sid).all()
        assert len(grades) == 1
        assert grades[0].points_earned == Decimal("95")
        assert grades[0].feedback == "Much better"
        actions = [a for (a,) in s.query(AuditEvent.action).filter(AuditEvent.entity_type == "Grade").order_by(AuditEvent.id)]
        assert actions == ["grade.create", "grade.update"]


def test_points_out_of_range(app):
    _, (sid,) = _submitted(app, max_points=50)
    with session_scope(app) as s:
        prof = _user(s, "prof@example.com")
        with pytest.raises(PointsOutOfRange):
            grade_submission(s, sid, 51, grader=prof)
        with pytest.raises(PointsOutOfRange):
            grade_submission(s, sid, -1, grader=prof)
        with pytest.raises(PointsOutOfRange):
            grade_submission(s, sid, "not a number", grader=prof)


def test_only_course_instructor_grades(app):
    _, (sid,) = _submitted(app)
    with session_scope(app) as s:
        with pytest.raises(NotAuthorized):
            grade_submission(s, sid, 10, grader=_user(s, "other@example.com"))


def test_resubmission_clears_grade(app):
    _, (sid,) = _submitted(app)
    with session_scope(app) as s:
        grade_submission(s, sid, 70, grader=_user(s, "prof@example.com"))
    with session_scope(app) as s:
        result = resubmit_and_invalidate_grade(s, sid, _user(s, "s0@example.com"), SubmissionPayload(text="v2"), now=DUE)
        assert result.grade_invalidated is True
    with session_scope(app) as s:
        assert get_grade(s, sid) is None
        assert s.get(Submission, sid).status == "submitted"
        assert s.query(AuditEvent).filter(AuditEvent.action == "submission.grade_invalidated").count() == 1


def test_course_aggregate(app):
    aid, (s0, s1) = _submitted(app, students=("s0@example.com", "s1@example.com"))
    _submitted(app, title="Ungraded")
    with session_scope(app) as s:
        prof = _user(s, "prof@example.com")
        grade_submission(s, s0, 90, grader=prof)
        grade_submission(s, s1, 60, grader=prof)
    with session_scope(app) as s:
        report = compute_course_aggregate(s, app.config["TEST_COURSE_ID"])
    assert report.graded_count == 2
    assert report.average_percentage == Decimal("75.00")
    assert report.letter_distribution == {"A": 1, "C": 1}
    by_id = {row["assignment_id"]: row for row in report.assignments}
    assert by_id[aid]["graded"] == 2
    assert by_id[aid]["average_points"] == 75.0
    ungraded = [row for row in report.assignments if row["assignment_id"] != aid][0]
    assert ungraded["submissions"] == 1
    assert ungraded["graded"] == 0
    assert ungraded["average_percentage"] is None


def test_finalize_enrollment(app):
    _, (first,) = _submitted(app, title="Quiz 1")
    _, (second,) = _submitted(app, title="Quiz 2")
    with session_scope(app) as s:
        prof = _user(s, "prof@example.com")
        grade_submission(s, first, 92, grader=prof)  # A, 4.0
        grade_submission(s, second, 81, grader=prof)  # B+, 3.3
    with session_scope(app) as s:
        student_id = _user(s, "s0@example.com").id
        enrollment = s.query(Enrollment).filter(Enrollment.student_id == student_id).one()
        done = finalize_enrollment(s, enrollment.id, grader=_user(s, "prof@example.com"))
        assert done.status == "completed"
        assert done.grade_points == Decimal("3.65")
        assert done.final_grade == "B+"
    with session_scope(app) as s:
        assert s.get(Course, app.config["TEST_COURSE_ID"]).current_students == 1


def test_finalize_without_grades(app):
    with session_scope(app) as s:
        student_id = _user(s, "s1@example.com").id
        enrollment = s.query(Enrollment).filter(Enrollment.student_id == student_id).one()
        with pytest.raises(NothingToFinalize):
            finalize_enrollment(s, enrollment.id, grader=_user(s, "prof@example.com"))


def test_grade_endpoint(app):
    _, (sid,) = _submitted(app)
    client = app.test_client()
    r = client.post("/auth/login", json={"email": "prof@example.com", "password": "pw"})
    headers = {"X-CSRF-Token": r.json["csrf_token"]}

    r = client.post(f"/api/submissions/{sid}/grade", json={"points_earned": 88.5}, headers=headers)
    assert r.status_code == 201
    assert r.json["letter_grade"] == "A-"

    r = client.post(f"/api/submissions/{sid}/grade", json={"points_earned": 101}, headers=headers)
    assert r.status_code == 400
    assert r.json["error"] == "points_out_of_range"

    r = client.get(f"/api/courses/{app.config['TEST_COURSE_ID']}/report")
    assert r.status_code == 200
    assert r.json["graded_count"] == 1
