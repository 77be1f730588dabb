"""
Assignment lifecycle service.
Draft/publish/close transitions and the submission intake rules (late policy, content, size).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.edulms.audit import record_event
from app.edulms.constants import (
    ASSIGNMENT_CLOSED,
    ASSIGNMENT_DRAFT,
    ASSIGNMENT_PUBLISHED,
    DEFAULT_ALLOWED_EXTENSIONS,
    DEFAULT_MAX_FILE_SIZE,
    ENROLLMENT_ACTIVE,
    NOTIFY_ASSIGNMENT_PUBLISHED,
    NOTIFY_SUBMISSION_RECEIVED,
    SUBMISSION_LATE,
    SUBMISSION_SUBMITTED,
    SUBMISSION_TYPES,
)
from app.edulms.errors import EngineError, NotAuthorized, NotFound, StateConflict, ValidationFailed
from app.edulms.ledger import guarded_update, lock_row
from app.edulms.models import User
from app.edulms.modules.enrollment.models import Course, Enrollment
from app.edulms.modules.enrollment.service import (
    CourseNotFound,
    active_student_ids,
    is_actively_enrolled,
    owns_course,
)
from app.edulms.modules.grading.service import SubmissionNotFound, invalidate_grade
from app.edulms.notifications import queue_notification
from app.edulms.utils import utcnow

from .models import Assignment, Submission


class AssignmentNotFound(NotFound):
    code = "assignment_not_found"
    default_message = "Assignment not found."


class AssignmentAlreadyPublished(StateConflict):
    code = "assignment_already_published"
    default_message = "Assignment is already published."


class AssignmentAlreadyClosed(StateConflict):
    code = "assignment_already_closed"
    default_message = "Assignment is closed."


class NotPublished(StateConflict):
    code = "not_published"
    default_message = "Assignment is not open for submission."


class DeadlinePassedHard(StateConflict):
    code = "deadline_passed_hard"
    default_message = "Assignment has been closed; submissions are no longer accepted."


class NotEnrolled(StateConflict):
    code = "not_enrolled"
    default_message = "You are not enrolled in this course."


class AlreadySubmitted(StateConflict):
    code = "already_submitted"
    default_message = "You have already submitted this assignment."


class MissingRequiredContent(ValidationFailed):
    code = "missing_required_content"


class FileTooLarge(ValidationFailed):
    code = "file_too_large"


class FileTypeNotAllowed(ValidationFailed):
    code = "file_type_not_allowed"


class InvalidAssignment(ValidationFailed):
    code = "invalid_assignment"


@dataclass(frozen=True)
class SubmissionPayload:
    text: str | None = None
    file_key: str | None = None
    file_name: str | None = None
    file_size: int | None = None

    @property
    def has_text(self) -> bool:
        return bool((self.text or "").strip())

    @property
    def has_file(self) -> bool:
        return bool(self.file_key)


@dataclass(frozen=True)
class SubmissionResult:
    submission: Submission
    is_late: bool
    status: str
    grade_invalidated: bool = False


def create_assignment(
    s: Session,
    course_id: int,
    *,
    title: str,
    max_points: int,
    due_date: datetime | None,
    submission_type: str = "both",
    max_file_size: int | None = None,
    default_max_file_size: int | None = None,
    allowed_extensions: str | None = DEFAULT_ALLOWED_EXTENSIONS,
    description: str | None = None,
    instructions: str | None = None,
    user: User,
) -> Assignment:
    course = s.get(Course, course_id)
    if course is None:
        raise CourseNotFound()
    if not owns_course(user, course):
        raise NotAuthorized("Only the course instructor can create assignments.")

    errors = []
    if not (title or "").strip():
        errors.append("Title is required.")
    if max_points is None or int(max_points) <= 0:
        errors.append("max_points must be positive.")
    if due_date is None:
        errors.append("Due date is required.")
    if submission_type not in SUBMISSION_TYPES:
        errors.append(f"Invalid submission type: {submission_type}")
    if max_file_size is not None and int(max_file_size) <= 0:
        errors.append("max_file_size must be positive.")
    if errors:
        raise InvalidAssignment("; ".join(errors), errors=errors)

    now = utcnow()
    a = Assignment(
        course_id=course.id,
        created_by_user_id=user.id,
        title=title.strip(),
        description=(description or "").strip() or None,
        instructions=(instructions or "").strip() or None,
        max_points=int(max_points),
        due_date=due_date,
        submission_type=submission_type,
        max_file_size=int(max_file_size) if max_file_size else (default_max_file_size or DEFAULT_MAX_FILE_SIZE),
        allowed_extensions=allowed_extensions or None,
        status=ASSIGNMENT_DRAFT,
        created_at=now,
        updated_at=now,
    )
    s.add(a)
    s.flush()

    record_event(
        s,
        actor=user,
        action="assignment.create",
        entity_type="Assignment",
        entity_id=str(a.id),
        metadata={"course_id": course.id, "title": a.title, "due_date": a.due_date},
    )
    return a


def _get_owned_assignment(s: Session, assignment_id: int, user: User) -> Assignment:
    a = s.get(Assignment, assignment_id)
    if a is None:
        raise AssignmentNotFound()
    if not owns_course(user, a.course):
        raise NotAuthorized("Only the course instructor can change this assignment.")
    return a


def publish_assignment(s: Session, assignment_id: int, *, user: User) -> int:
    """
    draft -> published. Queues one notification per actively-enrolled student;
    they go out after commit and a failed delivery never undoes the publish.
    Returns the number of students notified.
    """
    a = _get_owned_assignment(s, assignment_id, user)
    if a.status == ASSIGNMENT_PUBLISHED:
        raise AssignmentAlreadyPublished()
    if a.status == ASSIGNMENT_CLOSED:
        raise AssignmentAlreadyClosed()

    now = utcnow()
    won = guarded_update(
        s,
        Assignment,
        a.id,
        expected={"status": ASSIGNMENT_DRAFT},
        values={"status": ASSIGNMENT_PUBLISHED, "published_at": now, "updated_at": now},
    )
    s.refresh(a)
    if not won:
        if a.status == ASSIGNMENT_CLOSED:
            raise AssignmentAlreadyClosed()
        raise AssignmentAlreadyPublished()

    student_ids = active_student_ids(s, a.course_id)
    for student_id in student_ids:
        queue_notification(
            s,
            student_id,
            NOTIFY_ASSIGNMENT_PUBLISHED,
            {
                "assignment_id": a.id,
                "course_id": a.course_id,
                "title": a.title,
                "due_date": a.due_date.isoformat(),
            },
        )

    record_event(
        s,
        actor=user,
        action="assignment.publish",
        entity_type="Assignment",
        entity_id=str(a.id),
        metadata={"course_id": a.course_id, "notified": len(student_ids)},
    )
    return len(student_ids)


def close_assignment(s: Session, assignment_id: int, *, user: User) -> Assignment:
    """published -> closed. Existing submissions and grades are left as they are."""
    a = _get_owned_assignment(s, assignment_id, user)
    if a.status == ASSIGNMENT_CLOSED:
        raise AssignmentAlreadyClosed()
    if a.status != ASSIGNMENT_PUBLISHED:
        raise NotPublished("Only a published assignment can be closed.")

    now = utcnow()
    won = guarded_update(
        s,
        Assignment,
        a.id,
        expected={"status": ASSIGNMENT_PUBLISHED},
        values={"status": ASSIGNMENT_CLOSED, "closed_at": now, "updated_at": now},
    )
    s.refresh(a)
    if not won:
        raise AssignmentAlreadyClosed()

    record_event(
        s,
        actor=user,
        action="assignment.close",
        entity_type="Assignment",
        entity_id=str(a.id),
        metadata={"course_id": a.course_id},
    )
    return a


def _validate_content(a: Assignment, payload: SubmissionPayload) -> None:
    if a.submission_type == "text" and not payload.has_text:
        raise MissingRequiredContent("Text submission is required for this assignment.")
    if a.submission_type == "file" and not payload.has_file:
        raise MissingRequiredContent("File upload is required for this assignment.")
    if a.submission_type == "both" and not (payload.has_text or payload.has_file):
        raise MissingRequiredContent("Either text submission or file upload is required.")

    if payload.has_file:
        size = payload.file_size or 0
        if size > a.max_file_size:
            raise FileTooLarge(
                f"File size exceeds maximum allowed size of {a.max_file_size} bytes.",
                max_file_size=a.max_file_size,
                file_size=size,
            )
        allowed = a.allowed_extension_set()
        if allowed:
            ext = os.path.splitext(payload.file_name or payload.file_key or "")[1].lower().lstrip(".")
            if ext not in allowed:
                raise FileTypeNotAllowed(
                    f"File type '.{ext}' is not allowed.",
                    allowed=sorted(allowed),
                )


def _check_submittable(s: Session, a: Assignment | None, student: User) -> Assignment:
    """Checks shared by accept_submission() and can_submit(), in one fixed order."""
    if a is None:
        raise AssignmentNotFound()
    if a.status != ASSIGNMENT_PUBLISHED:
        raise NotPublished(status=a.status)
    if not is_actively_enrolled(s, student.id, a.course_id):
        raise NotEnrolled()
    existing = s.execute(
        select(Submission.id).where(Submission.assignment_id == a.id, Submission.student_id == student.id)
    ).first()
    if existing is not None:
        raise AlreadySubmitted(submission_id=existing[0])
    return a


def can_submit(s: Session, assignment_id: int, student: User) -> tuple[bool, str | None]:
    """Read-only precheck; returns (ok, failure code). Lateness never blocks."""
    try:
        _check_submittable(s, s.get(Assignment, assignment_id), student)
    except EngineError as e:
        return False, e.code
    return True, None


def accept_submission(
    s: Session,
    assignment_id: int,
    student: User,
    payload: SubmissionPayload,
    *,
    now: datetime | None = None,
) -> SubmissionResult:
    """
    Record a first submission. Past-due submissions are accepted with is_late=True;
    only a closed assignment refuses them.
    """
    a = _check_submittable(s, s.get(Assignment, assignment_id), student)
    _validate_content(a, payload)

    now = now or utcnow()
    is_late = now > a.due_date
    status = SUBMISSION_LATE if is_late else SUBMISSION_SUBMITTED
    sub = Submission(
        assignment_id=a.id,
        student_id=student.id,
        submission_text=payload.text if payload.has_text else None,
        file_key=payload.file_key,
        file_name=payload.file_name,
        file_size=payload.file_size if payload.has_file else None,
        status=status,
        is_late=is_late,
        resubmission_count=0,
        submitted_at=now,
        updated_at=now,
    )
    try:
        with s.begin_nested():
            s.add(sub)
            s.flush()
    except IntegrityError as e:
        raise AlreadySubmitted() from e

    if a.course.instructor_id:
        queue_notification(
            s,
            a.course.instructor_id,
            NOTIFY_SUBMISSION_RECEIVED,
            {"assignment_id": a.id, "submission_id": sub.id, "is_late": is_late},
        )
    record_event(
        s,
        actor=student,
        action="submission.create",
        entity_type="Submission",
        entity_id=str(sub.id),
        metadata={"assignment_id": a.id, "is_late": is_late},
    )
    return SubmissionResult(submission=sub, is_late=is_late, status=status)


def resubmit_and_invalidate_grade(
    s: Session,
    submission_id: int,
    student: User,
    payload: SubmissionPayload,
    *,
    now: datetime | None = None,
) -> SubmissionResult:
    """
    Replace a submission's content and drop any grade it carried.

    Grade removal is a deliberate part of this transition and is audited on its
    own, separate from the content change. Refused only once the assignment is closed.
    """
    sub = lock_row(s, Submission, submission_id)
    if sub is None:
        raise SubmissionNotFound()
    if sub.student_id != student.id:
        raise NotAuthorized("You can only resubmit your own work.")

    a = sub.assignment
    if a.status == ASSIGNMENT_CLOSED:
        raise DeadlinePassedHard()
    if a.status != ASSIGNMENT_PUBLISHED:
        raise NotPublished(status=a.status)
    _validate_content(a, payload)

    now = now or utcnow()
    is_late = now > a.due_date
    status = SUBMISSION_LATE if is_late else SUBMISSION_SUBMITTED

    sub.submission_text = payload.text if payload.has_text else None
    sub.file_key = payload.file_key
    sub.file_name = payload.file_name
    sub.file_size = payload.file_size if payload.has_file else None
    sub.is_late = is_late
    sub.status = status
    sub.resubmission_count = (sub.resubmission_count or 0) + 1
    sub.submitted_at = now
    sub.updated_at = now

    removed = invalidate_grade(s, sub.id)
    s.flush()

    record_event(
        s,
        actor=student,
        action="submission.resubmit",
        entity_type="Submission",
        entity_id=str(sub.id),
        metadata={"assignment_id": a.id, "is_late": is_late, "resubmission_count": sub.resubmission_count},
    )
    if removed is not None:
        record_event(
            s,
            actor=student,
            action="submission.grade_invalidated",
            entity_type="Submission",
            entity_id=str(sub.id),
            reason="Resubmitted after grading",
            metadata={
                "grade_id": removed["id"],
                "points_earned": removed["points_earned"],
                "letter_grade": removed["letter_grade"],
            },
        )
    if a.course.instructor_id:
        queue_notification(
            s,
            a.course.instructor_id,
            NOTIFY_SUBMISSION_RECEIVED,
            {"assignment_id": a.id, "submission_id": sub.id, "is_late": is_late, "resubmitted": True},
        )
    return SubmissionResult(submission=sub, is_late=is_late, status=status, grade_invalidated=removed is not None)


def visible_assignments(s: Session, student: User) -> list[Assignment]:
    """Published or closed assignments of the courses the student is actively enrolled in."""
    return list(
        s.execute(
            select(Assignment)
            .join(Enrollment, Enrollment.course_id == Assignment.course_id)
            .where(
                Enrollment.student_id == student.id,
                Enrollment.status == ENROLLMENT_ACTIVE,
                Assignment.status.in_([ASSIGNMENT_PUBLISHED, ASSIGNMENT_CLOSED]),
            )
            .order_by(Assignment.due_date.asc(), Assignment.id.asc())
        ).scalars()
    )
