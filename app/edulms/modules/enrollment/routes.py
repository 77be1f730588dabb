from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.edulms.constants import ROLE_STUDENT
from app.edulms.db import db_session
from app.edulms.errors import ValidationFailed
from app.edulms.models import User
from app.edulms.modules.enrollment.models import Course, Enrollment
from app.edulms.modules.enrollment.service import (
    CourseNotFound,
    bulk_update_status,
    can_enroll,
    create_course,
    enroll,
    recount_course,
    set_course_status,
    update_status,
)
from app.edulms.rbac import require_permission
from app.edulms.utils import parse_iso_date, to_int

bp = Blueprint("enrollment", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def course_to_dict(c: Course) -> dict:
    return {
        "id": c.id,
        "course_code": c.course_code,
        "title": c.title,
        "department": c.department,
        "credits": c.credits,
        "instructor_id": c.instructor_id,
        "max_students": c.max_students,
        "current_students": c.current_students,
        "start_date": c.start_date.isoformat() if c.start_date else None,
        "end_date": c.end_date.isoformat() if c.end_date else None,
        "status": c.status,
    }


def enrollment_to_dict(e: Enrollment) -> dict:
    return {
        "id": e.id,
        "student_id": e.student_id,
        "course_id": e.course_id,
        "status": e.status,
        "final_grade": e.final_grade,
        "grade_points": float(e.grade_points) if e.grade_points is not None else None,
        "completion_date": e.completion_date.isoformat() if e.completion_date else None,
        "enrolled_at": e.enrolled_at.isoformat() if e.enrolled_at else None,
    }


def _target_student(s, u: User, payload: dict) -> User:
    """Students enroll themselves; admins may name a student_id."""
    if u.role == ROLE_STUDENT:
        return u
    raw = payload.get("student_id")
    if raw in (None, ""):
        raise ValidationFailed("student_id is required.")
    student_id = to_int(raw)
    if student_id is None:
        raise ValidationFailed("student_id must be an integer.")
    student = s.get(User, student_id)
    if not student or student.role != ROLE_STUDENT:
        raise ValidationFailed("student_id must reference a student.")
    return student


# ---------- Courses ----------
@bp.post("/courses")
@require_permission("courses.manage")
def courses_create():
    s = db_session()
    u = _current_user()
    payload = _payload()

    instructor = None
    if payload.get("instructor_id"):
        instructor_id = to_int(payload["instructor_id"])
        instructor = s.get(User, instructor_id) if instructor_id is not None else None
        if not instructor:
            raise ValidationFailed("Instructor not found.")

    try:
        start_date = parse_iso_date(payload.get("start_date"))
        end_date = parse_iso_date(payload.get("end_date"))
        max_students = int(payload.get("max_students") or 0)
        credits = int(payload.get("credits") or 3)
    except (TypeError, ValueError) as e:
        raise ValidationFailed(str(e)) from e
    if start_date is None:
        raise ValidationFailed("start_date is required.")

    course = create_course(
        s,
        course_code=payload.get("course_code") or "",
        title=payload.get("title") or "",
        instructor=instructor,
        max_students=max_students,
        start_date=start_date,
        end_date=end_date,
        status=payload.get("status") or "active",
        department=payload.get("department"),
        credits=credits,
        description=payload.get("description"),
        user=u,
    )
    s.commit()
    return jsonify(course_to_dict(course)), 201


@bp.post("/courses/<int:course_id>/enroll")
@require_permission("courses.enroll")
def courses_enroll(course_id: int):
    s = db_session()
    u = _current_user()
    student = _target_student(s, u, _payload())

    result = enroll(
        s,
        student,
        course_id,
        max_course_load=current_app.config.get("MAX_COURSE_LOAD"),
        actor=u,
    )
    s.commit()
    body = enrollment_to_dict(result.enrollment)
    body["reactivated"] = result.reactivated
    return jsonify(body), 200 if result.reactivated else 201


@bp.get("/courses/<int:course_id>/can-enroll")
@require_permission("courses.enroll")
def courses_can_enroll(course_id: int):
    s = db_session()
    u = _current_user()
    student = _target_student(s, u, dict(request.args))
    ok, reason = can_enroll(s, student, course_id, max_course_load=current_app.config.get("MAX_COURSE_LOAD"))
    return jsonify({"can_enroll": ok, "reason": reason})


@bp.post("/courses/<int:course_id>/recount")
@require_permission("courses.manage")
def courses_recount(course_id: int):
    s = db_session()
    u = _current_user()
    live = recount_course(s, course_id, actor=u)
    s.commit()
    return jsonify({"course_id": course_id, "current_students": live})


@bp.post("/courses/<int:course_id>/status")
@require_permission("courses.manage")
def courses_status(course_id: int):
    s = db_session()
    payload = _payload()
    course = set_course_status(
        s,
        course_id,
        (payload.get("status") or "").strip(),
        user=_current_user(),
        reason=payload.get("reason"),
    )
    s.commit()
    return jsonify(course_to_dict(course))


@bp.get("/courses/<int:course_id>")
@require_permission("courses.enroll")
def courses_detail(course_id: int):
    s = db_session()
    course = s.get(Course, course_id)
    if not course:
        raise CourseNotFound()
    return jsonify(course_to_dict(course))


# ---------- Enrollments ----------
@bp.post("/enrollments/<int:enrollment_id>/status")
@require_permission("enrollments.manage")
def enrollments_status(enrollment_id: int):
    s = db_session()
    u = _current_user()
    payload = _payload()
    enrollment = update_status(
        s,
        enrollment_id,
        (payload.get("status") or "").strip(),
        actor=u,
        reason=payload.get("reason"),
    )
    s.commit()
    return jsonify(enrollment_to_dict(enrollment))


@bp.post("/enrollments/bulk-status")
@require_permission("enrollments.manage")
def enrollments_bulk_status():
    s = db_session()
    u = _current_user()
    payload = _payload()
    ids = payload.get("enrollment_ids") or []
    if not isinstance(ids, list) or not ids:
        raise ValidationFailed("enrollment_ids must be a non-empty list.")
    outcome = bulk_update_status(
        s,
        ids,
        (payload.get("status") or "").strip(),
        actor=u,
        reason=payload.get("reason"),
    )
    s.commit()
    return jsonify(outcome.to_dict())

