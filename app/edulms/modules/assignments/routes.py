from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.edulms.db import db_session
from app.edulms.errors import ValidationFailed
from app.edulms.models import User
from app.edulms.modules.assignments.models import Assignment, Submission
from app.edulms.modules.assignments.service import (
    SubmissionPayload,
    SubmissionResult,
    accept_submission,
    can_submit,
    close_assignment,
    create_assignment,
    publish_assignment,
    resubmit_and_invalidate_grade,
    visible_assignments,
)
from app.edulms.rbac import require_permission
from app.edulms.utils import parse_iso_datetime

bp = Blueprint("assignments", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def assignment_to_dict(a: Assignment) -> dict:
    return {
        "id": a.id,
        "course_id": a.course_id,
        "title": a.title,
        "description": a.description,
        "instructions": a.instructions,
        "max_points": a.max_points,
        "due_date": a.due_date.isoformat() if a.due_date else None,
        "submission_type": a.submission_type,
        "max_file_size": a.max_file_size,
        "allowed_extensions": a.allowed_extensions,
        "status": a.status,
        "published_at": a.published_at.isoformat() if a.published_at else None,
        "closed_at": a.closed_at.isoformat() if a.closed_at else None,
    }


def submission_to_dict(sub: Submission) -> dict:
    return {
        "id": sub.id,
        "assignment_id": sub.assignment_id,
        "student_id": sub.student_id,
        "status": sub.status,
        "is_late": sub.is_late,
        "file_name": sub.file_name,
        "file_size": sub.file_size,
        "resubmission_count": sub.resubmission_count,
        "submitted_at": sub.submitted_at.isoformat() if sub.submitted_at else None,
    }


def _result_to_dict(result: SubmissionResult) -> dict:
    body = submission_to_dict(result.submission)
    body["grade_invalidated"] = result.grade_invalidated
    return body


def _submission_payload(payload: dict) -> SubmissionPayload:
    raw_size = payload.get("file_size")
    try:
        file_size = int(raw_size) if raw_size not in (None, "") else None
    except (TypeError, ValueError) as e:
        raise ValidationFailed("file_size must be an integer.") from e
    return SubmissionPayload(
        text=payload.get("text"),
        file_key=(payload.get("file_key") or "").strip() or None,
        file_name=(payload.get("file_name") or "").strip() or None,
        file_size=file_size,
    )


# ---------- Instructor ----------
@bp.post("/courses/<int:course_id>/assignments")
@require_permission("assignments.manage")
def assignments_create(course_id: int):
    s = db_session()
    u = _current_user()
    payload = _payload()
    try:
        due_date = parse_iso_datetime(payload.get("due_date"))
        max_points = int(payload.get("max_points") or 0)
        max_file_size = int(payload["max_file_size"]) if payload.get("max_file_size") else None
    except (TypeError, ValueError) as e:
        raise ValidationFailed(str(e)) from e

    a = create_assignment(
        s,
        course_id,
        title=payload.get("title") or "",
        max_points=max_points,
        due_date=due_date,
        submission_type=(payload.get("submission_type") or "both").strip(),
        max_file_size=max_file_size,
        default_max_file_size=current_app.config.get("DEFAULT_MAX_FILE_SIZE"),
        allowed_extensions=payload.get("allowed_extensions") or None,
        description=payload.get("description"),
        instructions=payload.get("instructions"),
        user=u,
    )
    s.commit()
    return jsonify(assignment_to_dict(a)), 201


@bp.post("/assignments/<int:assignment_id>/publish")
@require_permission("assignments.manage")
def assignments_publish(assignment_id: int):
    s = db_session()
    notified = publish_assignment(s, assignment_id, user=_current_user())
    # Notifications go out on commit.
    s.commit()
    return jsonify({"assignment_id": assignment_id, "status": "published", "notified": notified})


@bp.post("/assignments/<int:assignment_id>/close")
@require_permission("assignments.manage")
def assignments_close(assignment_id: int):
    s = db_session()
    a = close_assignment(s, assignment_id, user=_current_user())
    s.commit()
    return jsonify(assignment_to_dict(a))


# ---------- Student ----------
@bp.get("/assignments")
@require_permission("assignments.submit")
def assignments_visible():
    s = db_session()
    items = visible_assignments(s, _current_user())
    return jsonify({"assignments": [assignment_to_dict(a) for a in items]})


@bp.get("/assignments/<int:assignment_id>/can-submit")
@require_permission("assignments.submit")
def assignments_can_submit(assignment_id: int):
    s = db_session()
    ok, reason = can_submit(s, assignment_id, _current_user())
    return jsonify({"can_submit": ok, "reason": reason})


@bp.post("/assignments/<int:assignment_id>/submissions")
@require_permission("assignments.submit")
def submissions_create(assignment_id: int):
    s = db_session()
    u = _current_user()
    result = accept_submission(s, assignment_id, u, _submission_payload(_payload()))
    s.commit()
    return jsonify(_result_to_dict(result)), 201


@bp.post("/submissions/<int:submission_id>/resubmit")
@require_permission("assignments.submit")
def submissions_resubmit(submission_id: int):
    s = db_session()
    u = _current_user()
    result = resubmit_and_invalidate_grade(s, submission_id, u, _submission_payload(_payload()))
    s.commit()
    return jsonify(_result_to_dict(result))
