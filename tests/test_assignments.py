"""Tests for the assignment lifecycle: publish, late policy, content rules, resubmission."""
from datetime import date, datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.edulms import create_app
from app.edulms.db import session_scope
from app.edulms.errors import NotAuthorized
from app.edulms.models import Base, User
from app.edulms.modules.assignments.models import Assignment, Submission
from app.edulms.modules.assignments.service import (
    AlreadySubmitted,
    DeadlinePassedHard,
    FileTooLarge,
    FileTypeNotAllowed,
    MissingRequiredContent,
    NotEnrolled,
    NotPublished,
    SubmissionPayload,
    accept_submission,
    can_submit,
    close_assignment,
    create_assignment,
    publish_assignment,
    resubmit_and_invalidate_grade,
    visible_assignments,
)
from app.edulms.modules.enrollment.service import create_course, enroll
from app.edulms.notifications import Notifier, set_notifier

DUE = datetime(2024, 4, 1, 12, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self, fail_for: set[int] | None = None):
        self.sent: list[tuple[int, str, dict]] = []
        self.fail_for = fail_for or set()

    def notify(self, user_id, kind, payload):
        if user_id in self.fail_for:
            raise RuntimeError("mailbox unavailable")
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
        instructor = User(email="prof@example.com", password_hash=generate_password_hash("pw"), role="instructor", is_active=True)
        s.add(instructor)
        students = [
            User(email=f"s{i}@example.com", password_hash=generate_password_hash("pw"), role="student", is_active=True)
            for i in range(3)
        ]
        s.add_all(students)
        s.flush()
        course = create_course(
            s,
            course_code="CS101",
            title="Intro",
            instructor=instructor,
            max_students=10,
            start_date=date(2024, 1, 1),
        )
        # s2 stays unenrolled
        for st in students[:2]:
            enroll(s, st, course.id, today=date(2024, 2, 1))
        app.config["TEST_COURSE_ID"] = course.id
    return app


def _user(s, email: str) -> User:
    return s.query(User).filter(User.email == email).one()


def _assignment(app, *, submission_type="both", publish=True, **kwargs) -> int:
    with session_scope(app) as s:
        a = create_assignment(
            s,
            app.config["TEST_COURSE_ID"],
            title="Essay 1",
            max_points=100,
            due_date=DUE,
            submission_type=submission_type,
            user=_user(s, "prof@example.com"),
            **kwargs,
        )
        if publish:
            publish_assignment(s, a.id, user=_user(s, "prof@example.com"))
        return a.id


def test_publish_notifies_active_students(app, notifier):
    aid = _assignment(app)
    published = [(uid, kind) for uid, kind, _ in notifier.sent if kind == "assignment.published"]
    with session_scope(app) as s:
        expected = sorted(_user(s, f"s{i}@example.com").id for i in range(2))
        assert s.get(Assignment, aid).status == "published"
    assert sorted(uid for uid, _ in published) == expected


def test_publish_survives_notification_failure(app):
    with session_scope(app) as s:
        failing = _user(s, "s0@example.com").id
    rec = RecordingNotifier(fail_for={failing})
    previous = set_notifier(rec)
    try:
        aid = _assignment(app)
    finally:
        set_notifier(previous)
    with session_scope(app) as s:
        assert s.get(Assignment, aid).status == "published"
    # the other student still got theirs
    assert len([1 for _, kind, _ in rec.sent if kind == "assignment.published"]) == 1


def test_only_course_instructor_creates(app):
    with session_scope(app) as s:
        with pytest.raises(NotAuthorized):
            create_assignment(
                s,
                app.config["TEST_COURSE_ID"],
                title="x",
                max_points=10,
                due_date=DUE,
                user=_user(s, "s0@example.com"),
            )


def test_draft_is_not_submittable(app):
    aid = _assignment(app, publish=False)
    with session_scope(app) as s:
        student = _user(s, "s0@example.com")
        assert can_submit(s, aid, student) == (False, "not_published")
        with pytest.raises(NotPublished):
            accept_submission(s, aid, student, SubmissionPayload(text="hello"), now=DUE - timedelta(days=1))


def test_on_time_and_late_submissions(app, notifier):
    aid = _assignment(app)
    with session_scope(app) as s:
        on_time = accept_submission(s, aid, _user(s, "s0@example.com"), SubmissionPayload(text="early"), now=DUE - timedelta(hours=1))
        late = accept_submission(s, aid, _user(s, "s1@example.com"), SubmissionPayload(text="late"), now=DUE + timedelta(hours=1))
        assert on_time.is_late is False and on_time.status == "submitted"
        assert late.is_late is True and late.status == "late"
    assert any(kind == "submission.received" for _, kind, _ in notifier.sent)


def test_second_submission_is_rejected(app):
    aid = _assignment(app)
    with session_scope(app) as s:
        accept_submission(s, aid, _user(s, "s0@example.com"), SubmissionPayload(text="one"), now=DUE)
    with session_scope(app) as s:
        student = _user(s, "s0@example.com")
        assert can_submit(s, aid, student) == (False, "already_submitted")
        with pytest.raises(AlreadySubmitted):
            accept_submission(s, aid, student, SubmissionPayload(text="two"), now=DUE)


def test_unenrolled_student_cannot_submit(app):
    aid = _assignment(app)
    with session_scope(app) as s:
        with pytest.raises(NotEnrolled):
            accept_submission(s, aid, _user(s, "s2@example.com"), SubmissionPayload(text="hi"), now=DUE)


def test_content_rules(app):
    text_only = _assignment(app, submission_type="text")
    file_only = _assignment(app, submission_type="file", max_file_size=1000)
    with session_scope(app) as s:
        student = _user(s, "s0@example.com")
        with pytest.raises(MissingRequiredContent):
            accept_submission(s, text_only, student, SubmissionPayload(text="   "), now=DUE)
        with pytest.raises(MissingRequiredContent):
            accept_submission(s, file_only, student, SubmissionPayload(text="words"), now=DUE)
        with pytest.raises(FileTooLarge):
            accept_submission(
                s, file_only, student, SubmissionPayload(file_key="k/1", file_name="a.pdf", file_size=5000), now=DUE
            )
        with pytest.raises(FileTypeNotAllowed):
            accept_submission(
                s, file_only, student, SubmissionPayload(file_key="k/2", file_name="a.exe", file_size=10), now=DUE
            )
        ok = accept_submission(s, file_only, student, SubmissionPayload(file_key="k/3", file_name="a.PDF", file_size=10), now=DUE)
        assert ok.submission.file_name == "a.PDF"


def test_resubmit_bumps_count_and_recomputes_lateness(app):
    aid = _assignment(app)
    with session_scope(app) as s:
        sid = accept_submission(s, aid, _user(s, "s0@example.com"), SubmissionPayload(text="v1"), now=DUE - timedelta(days=1)).submission.id
    with session_scope(app) as s:
        result = resubmit_and_invalidate_grade(s, sid, _user(s, "s0@example.com"), SubmissionPayload(text="v2"), now=DUE + timedelta(days=1))
        assert result.is_late is True
        assert result.grade_invalidated is False
    with session_scope(app) as s:
        sub = s.get(Submission, sid)
        assert sub.resubmission_count == 1
        assert sub.submission_text == "v2"


def test_resubmit_only_by_owner(app):
    aid = _assignment(app)
    with session_scope(app) as s:
        sid = accept_submission(s, aid, _user(s, "s0@example.com"), SubmissionPayload(text="v1"), now=DUE).submission.id
    with session_scope(app) as s:
        with pytest.raises(NotAuthorized):
            resubmit_and_invalidate_grade(s, sid, _user(s, "s1@example.com"), SubmissionPayload(text="mine now"), now=DUE)


def test_closed_assignment_blocks_submission_and_resubmission(app):
    aid = _assignment(app)
    with session_scope(app) as s:
        sid = accept_submission(s, aid, _user(s, "s0@example.com"), SubmissionPayload(text="v1"), now=DUE).submission.id
    with session_scope(app) as s:
        close_assignment(s, aid, user=_user(s, "prof@example.com"))
    with session_scope(app) as s:
        with pytest.raises(DeadlinePassedHard):
            resubmit_and_invalidate_grade(s, sid, _user(s, "s0@example.com"), SubmissionPayload(text="v2"), now=DUE)
        with pytest.raises(NotPublished):
            accept_submission(s, aid, _user(s, "s1@example.com"), SubmissionPayload(text="late"), now=DUE)


def test_visible_assignments_skip_drafts(app):
    published = _assignment(app)
    _assignment(app, publish=False)
    with session_scope(app) as s:
        assert [a.id for a in visible_assignments(s, _user(s, "s0@example.com"))] == [published]
        assert visible_assignments(s, _user(s, "s2@example.com")) == []


def test_submission_endpoint(app, notifier):
    aid = _assignment(app)
    client = app.test_client()
    r = client.post("/auth/login", json={"email": "s0@example.com", "password": "pw"})
    headers = {"X-CSRF-Token": r.json["csrf_token"]}

    r = client.get(f"/api/assignments/{aid}/can-submit")
    assert r.json == {"can_submit": True, "reason": None}

    r = client.post(f"/api/assignments/{aid}/submissions", json={"text": "My essay"}, headers=headers)
    assert r.status_code == 201
    # DUE is in the past relative to the wall clock
    assert r.json["is_late"] is True

    r = client.post(f"/api/assignments/{aid}/submissions", json={"text": "again"}, headers=headers)
    assert r.status_code == 409
    assert r.json["error"] == "already_submitted"


def test_configured_default_file_size_applies_to_new_assignments(app):
    app.config["DEFAULT_MAX_FILE_SIZE"] = 2048
    client = app.test_client()
    r = client.post("/auth/login", json={"email": "prof@example.com", "password": "pw"})
    headers = {"X-CSRF-Token": r.json["csrf_token"]}

    r = client.post(
        f"/api/courses/{app.config['TEST_COURSE_ID']}/assignments",
        json={"title": "Lab 1", "max_points": 10, "due_date": "2030-01-01T00:00:00", "submission_type": "file"},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json["max_file_size"] == 2048
    aid = r.json["id"]

    r = client.post(
        f"/api/courses/{app.config['TEST_COURSE_ID']}/assignments",
        json={"title": "Lab 2", "max_points": 10, "due_date": "2030-01-01T00:00:00", "max_file_size": 4096},
        headers=headers,
    )
    assert r.json["max_file_size"] == 4096

    with session_scope(app) as s:
        publish_assignment(s, aid, user=_user(s, "prof@example.com"))
    with session_scope(app) as s:
        with pytest.raises(FileTooLarge):
            accept_submission(
                s,
                aid,
                _user(s, "s0@example.com"),
                SubmissionPayload(file_key="uploads/lab1.pdf", file_name="lab1.pdf", file_size=4096),
            )
