"""
Enrollment service layer.
Handles course capacity, enroll/reactivate, status transitions and the course counter.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.edulms.audit import record_event
from app.edulms.constants import (
    COURSE_ACTIVE,
    COURSE_STATUSES,
    DEFAULT_MAX_COURSE_LOAD,
    ENROLLMENT_ACTIVE,
    ENROLLMENT_COMPLETED,
    ENROLLMENT_STATUSES,
)
from app.edulms.errors import EngineError, NotFound, StateConflict, ValidationFailed
from app.edulms.ledger import bounded_increment, floored_decrement, guarded_update, lock_row
from app.edulms.utils import BulkOutcome, to_int, utcnow

from .models import Course, Enrollment

if TYPE_CHECKING:
    from app.edulms.models import User


class CourseNotFound(NotFound):
    code = "course_not_found"
    default_message = "Course not found."


class EnrollmentNotFound(NotFound):
    code = "enrollment_not_found"
    default_message = "Enrollment not found."


class AlreadyEnrolled(StateConflict):
    code = "already_enrolled"
    default_message = "Student is already enrolled in this course."


class EnrollmentCompleted(StateConflict):
    code = "enrollment_completed"
    default_message = "Student has already completed this course."


class CourseInactive(StateConflict):
    code = "course_inactive"
    default_message = "Course is not open for enrollment."


class CourseFull(StateConflict):
    code = "course_full"
    default_message = "Course has reached maximum capacity."


class CourseNotStarted(StateConflict):
    code = "course_not_started"
    default_message = "Course has not started yet."


class CourseLoadExceeded(StateConflict):
    code = "course_load_exceeded"
    default_message = "Maximum course load reached."


class EnrollmentConflict(StateConflict):
    code = "enrollment_conflict"
    default_message = "Enrollment was changed by another request; reload and retry."


class InvalidEnrollmentStatus(ValidationFailed):
    code = "invalid_enrollment_status"
    default_message = "Invalid enrollment status."


class InvalidCourse(ValidationFailed):
    code = "invalid_course"


@dataclass(frozen=True)
class EnrollmentResult:
    enrollment: Enrollment
    reactivated: bool = False


def create_course(
    s: Session,
    *,
    course_code: str,
    title: str,
    instructor: User | None,
    max_students: int,
    start_date: date,
    end_date: date | None = None,
    status: str = COURSE_ACTIVE,
    department: str | None = None,
    credits: int = 3,
    description: str | None = None,
    user: User | None = None,
) -> Course:
    """Create a course with an empty seat counter."""
    errors = []
    if not (course_code or "").strip():
        errors.append("Course code is required.")
    if not (title or "").strip():
        errors.append("Title is required.")
    if max_students is None or int(max_students) < 1:
        errors.append("max_students must be at least 1.")
    if status not in COURSE_STATUSES:
        errors.append(f"Invalid course status: {status}")
    if end_date and start_date and end_date < start_date:
        errors.append("End date cannot be before start date.")
    if errors:
        raise InvalidCourse("; ".join(errors), errors=errors)

    now = utcnow()
    course = Course(
        course_code=course_code.strip().upper(),
        title=title.strip(),
        description=description.strip() if description else None,
        department=department.strip() if department else None,
        credits=credits,
        instructor_id=instructor.id if instructor else None,
        max_students=int(max_students),
        current_students=0,
        start_date=start_date,
        end_date=end_date,
        status=status,
        created_at=now,
        updated_at=now,
    )
    s.add(course)
    s.flush()

    record_event(
        s,
        actor=user,
        action="course.create",
        entity_type="Course",
        entity_id=str(course.id),
        metadata={"course_code": course.course_code, "max_students": course.max_students},
    )
    return course


def set_course_status(s: Session, course_id: int, status: str, *, user: User | None = None, reason: str | None = None) -> Course:
    if status not in COURSE_STATUSES:
        raise InvalidCourse(f"Invalid course status: {status}")
    course = s.get(Course, course_id)
    if course is None:
        raise CourseNotFound()
    old = course.status
    course.status = status
    course.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="course.status_change",
        entity_type="Course",
        entity_id=str(course.id),
        reason=reason,
        metadata={"from": old, "to": status},
    )
    return course


def owns_course(user: User | None, course: Course | None) -> bool:
    """Course-level ownership: the assigned instructor."""
    return bool(user and course and course.instructor_id == user.id)


def find_enrollment(s: Session, student_id: int, course_id: int) -> Enrollment | None:
    return s.execute(
        select(Enrollment).where(Enrollment.student_id == student_id, Enrollment.course_id == course_id)
    ).scalar_one_or_none()


def active_course_load(s: Session, student_id: int) -> int:
    return s.execute(
        select(func.count(Enrollment.id)).where(
            Enrollment.student_id == student_id,
            Enrollment.status == ENROLLMENT_ACTIVE,
        )
    ).scalar_one()


def active_student_ids(s: Session, course_id: int) -> list[int]:
    return list(
        s.execute(
            select(Enrollment.student_id)
            .where(Enrollment.course_id == course_id, Enrollment.status == ENROLLMENT_ACTIVE)
            .order_by(Enrollment.student_id)
        ).scalars()
    )


def is_actively_enrolled(s: Session, student_id: int, course_id: int) -> bool:
    found = s.execute(
        select(Enrollment.id).where(
            Enrollment.student_id == student_id,
            Enrollment.course_id == course_id,
            Enrollment.status == ENROLLMENT_ACTIVE,
        )
    ).first()
    return found is not None


def _check_eligibility(
    s: Session,
    student_id: int,
    course: Course,
    existing: Enrollment | None,
    max_course_load: int,
    today: date,
) -> None:
    """The checks shared by enroll() and can_enroll(), in one fixed order."""
    if existing is not None:
        if existing.status == ENROLLMENT_ACTIVE:
            raise AlreadyEnrolled()
        if existing.status == ENROLLMENT_COMPLETED:
            raise EnrollmentCompleted()
    if course.status != COURSE_ACTIVE:
        raise CourseInactive()
    if course.current_students >= course.max_students:
        raise CourseFull()
    if course.start_date and course.start_date > today:
        raise CourseNotStarted(start_date=course.start_date.isoformat())
    if active_course_load(s, student_id) >= max_course_load:
        raise CourseLoadExceeded(f"Maximum course limit ({max_course_load}) reached.", limit=max_course_load)


def can_enroll(
    s: Session,
    student: User,
    course_id: int,
    *,
    max_course_load: int | None = None,
    today: date | None = None,
) -> tuple[bool, str | None]:
    """Read-only precheck; returns (ok, failure code)."""
    course = s.get(Course, course_id)
    if course is None:
        return False, CourseNotFound.code
    existing = find_enrollment(s, student.id, course_id)
    try:
        _check_eligibility(
            s,
            student.id,
            course,
            existing,
            max_course_load or DEFAULT_MAX_COURSE_LOAD,
            today or utcnow().date(),
        )
    except EngineError as e:
        return False, e.code
    return True, None


def enroll(
    s: Session,
    student: User,
    course_id: int,
    *,
    max_course_load: int | None = None,
    actor: User | None = None,
    today: date | None = None,
) -> EnrollmentResult:
    """
    Enroll a student, or reactivate their inactive/dropped row in place.

    The seat is taken with a bounded increment on the course row inside the same
    savepoint as the enrollment write, so either both land or neither does.
    """
    limit = max_course_load or DEFAULT_MAX_COURSE_LOAD
    course = lock_row(s, Course, course_id)
    if course is None:
        raise CourseNotFound()

    existing = find_enrollment(s, student.id, course_id)
    _check_eligibility(s, student.id, course, existing, limit, today or utcnow().date())

    now = utcnow()
    reactivated = existing is not None
    try:
        with s.begin_nested():
            if not bounded_increment(s, Course, course.id, "current_students", "max_students", where={"status": COURSE_ACTIVE}):
                s.refresh(course)
                if course.status != COURSE_ACTIVE:
                    raise CourseInactive()
                raise CourseFull()

            if existing is not None:
                previous = existing.status
                if not guarded_update(
                    s,
                    Enrollment,
                    existing.id,
                    expected={"status": previous},
                    values={"status": ENROLLMENT_ACTIVE, "updated_at": now},
                ):
                    raise AlreadyEnrolled()
                enrollment = existing
            else:
                enrollment = Enrollment(
                    student_id=student.id,
                    course_id=course.id,
                    status=ENROLLMENT_ACTIVE,
                    enrolled_at=now,
                    updated_at=now,
                )
                s.add(enrollment)
                s.flush()
    except IntegrityError as e:
        # Concurrent first enrollment of the same pair hit the unique constraint.
        raise AlreadyEnrolled() from e

    s.refresh(course)
    s.refresh(enrollment)

    record_event(
        s,
        actor=actor or student,
        action="enrollment.reactivate" if reactivated else "enrollment.create",
        entity_type="Enrollment",
        entity_id=str(enrollment.id),
        metadata={
            "student_id": student.id,
            "course_id": course.id,
            "course_code": course.course_code,
            "current_students": course.current_students,
        },
    )
    return EnrollmentResult(enrollment=enrollment, reactivated=reactivated)


def update_status(
    s: Session,
    enrollment_id: int,
    new_status: str,
    *,
    actor: User | None = None,
    reason: str | None = None,
    final_grade: str | None = None,
    grade_points: Decimal | float | None = None,
) -> Enrollment:
    """
    Move an enrollment to new_status and adjust the course counter relative to the
    previously stored status (-1 leaving active, +1 entering active).
    """
    if new_status not in ENROLLMENT_STATUSES:
        raise InvalidEnrollmentStatus(f"Invalid enrollment status: {new_status}")

    enrollment = lock_row(s, Enrollment, enrollment_id)
    if enrollment is None:
        raise EnrollmentNotFound()

    previous = enrollment.status
    now = utcnow()
    values: dict[str, object] = {"status": new_status, "updated_at": now}
    if new_status == ENROLLMENT_COMPLETED:
        values["completion_date"] = now.date()
        values["final_grade"] = final_grade
        values["grade_points"] = Decimal(str(grade_points)) if grade_points is not None else None
    elif previous == ENROLLMENT_COMPLETED:
        values["completion_date"] = None
        values["final_grade"] = None
        values["grade_points"] = None

    with s.begin_nested():
        if previous == ENROLLMENT_ACTIVE and new_status != ENROLLMENT_ACTIVE:
            floored_decrement(s, Course, enrollment.course_id, "current_students")
        elif previous != ENROLLMENT_ACTIVE and new_status == ENROLLMENT_ACTIVE:
            if not bounded_increment(s, Course, enrollment.course_id, "current_students", "max_students"):
                raise CourseFull()
        if not guarded_update(s, Enrollment, enrollment.id, expected={"status": previous}, values=values):
            raise EnrollmentConflict()

    s.refresh(enrollment)
    if enrollment.course is not None:
        s.refresh(enrollment.course)

    record_event(
        s,
        actor=actor,
        action="enrollment.status_change",
        entity_type="Enrollment",
        entity_id=str(enrollment.id),
        reason=reason,
        metadata={
            "course_id": enrollment.course_id,
            "student_id": enrollment.student_id,
            "from": previous,
            "to": new_status,
            "final_grade": final_grade,
        },
    )
    return enrollment


def bulk_update_status(
    s: Session,
    enrollment_ids: list,
    new_status: str,
    *,
    actor: User | None = None,
    reason: str | None = None,
) -> BulkOutcome:
    outcome = BulkOutcome()
    for raw_id in enrollment_ids:
        enrollment_id = to_int(raw_id)
        if enrollment_id is None:
            outcome.failed[str(raw_id)] = "invalid_id"
            continue
        try:
            update_status(s, enrollment_id, new_status, actor=actor, reason=reason)
            outcome.succeeded.append(enrollment_id)
        except EngineError as e:
            outcome.failed[enrollment_id] = e.code
    return outcome


def recount_course(s: Session, course_id: int, *, actor: User | None = None) -> int:
    """Rebuild current_students from live active rows. Returns the corrected count."""
    course = lock_row(s, Course, course_id)
    if course is None:
        raise CourseNotFound()
    live = s.execute(
        select(func.count(Enrollment.id)).where(
            Enrollment.course_id == course_id,
            Enrollment.status == ENROLLMENT_ACTIVE,
        )
    ).scalar_one()
    if course.current_students != live:
        old = course.current_students
        course.current_students = live
        course.updated_at = utcnow()
        record_event(
            s,
            actor=actor,
            action="course.counter_repaired",
            entity_type="Course",
            entity_id=str(course.id),
            metadata={"from": old, "to": live},
        )
    return live
