from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.edulms.constants import ROLE_INSTRUCTOR
from app.edulms.db import db_session
from app.edulms.errors import NotAuthorized
from app.edulms.models import User
from app.edulms.modules.enrollment.models import Course
from app.edulms.modules.enrollment.service import CourseNotFound, owns_course
from app.edulms.modules.grading.service import compute_course_aggregate, finalize_enrollment, grade_submission
from app.edulms.rbac import require_permission

bp = Blueprint("grading", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.post("/submissions/<int:submission_id>/grade")
@require_permission("grades.write")
def submissions_grade(submission_id: int):
    s = db_session()
    u = _current_user()
    payload = request.get_json(silent=True) or {}
    result = grade_submission(
        s,
        submission_id,
        payload.get("points_earned"),
        letter_grade=payload.get("letter_grade"),
        feedback=payload.get("feedback"),
        grader=u,
    )
    s.commit()
    grade = result.grade
    return jsonify(
        {
            "id": grade.id,
            "submission_id": grade.submission_id,
            "points_earned": str(grade.points_earned),
            "max_points": grade.max_points,
            "percentage": float(result.display_percentage),
            "letter_grade": result.letter_grade,
            "grade_points": result.grade_points,
            "feedback": grade.feedback,
            "created": result.created,
        }
    ), 201 if result.created else 200


@bp.get("/courses/<int:course_id>/report")
@require_permission("reports.view")
def courses_report(course_id: int):
    s = db_session()
    u = _current_user()
    course = s.get(Course, course_id)
    if course is None:
        raise CourseNotFound()
    # Instructors see their own courses; admins see all.
    if u.role == ROLE_INSTRUCTOR and not owns_course(u, course):
        raise NotAuthorized()
    return jsonify(compute_course_aggregate(s, course_id).to_dict())


@bp.post("/enrollments/<int:enrollment_id>/finalize")
@require_permission("grades.write")
def enrollments_finalize(enrollment_id: int):
    s = db_session()
    enrollment = finalize_enrollment(s, enrollment_id, grader=_current_user())
    s.commit()
    return jsonify(
        {
            "id": enrollment.id,
            "status": enrollment.status,
            "final_grade": enrollment.final_grade,
            "grade_points": float(enrollment.grade_points) if enrollment.grade_points is not None else None,
        }
    )
