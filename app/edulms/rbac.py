"""
Role table. The only place roles are mapped to permissions and landing paths;
everything else asks this module.
"""
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify

from app.edulms.constants import ROLE_ADMIN, ROLE_FINANCE_OFFICER, ROLE_INSTRUCTOR, ROLE_STUDENT
from app.edulms.models import User

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_STUDENT: frozenset(
        {
            "courses.enroll",
            "assignments.view",
            "assignments.submit",
            "payments.initiate",
            "payments.view",
        }
    ),
    ROLE_INSTRUCTOR: frozenset(
        {
            "assignments.view",
            "assignments.manage",
            "grades.write",
            "reports.view",
        }
    ),
    ROLE_FINANCE_OFFICER: frozenset(
        {
            "payments.initiate",
            "payments.view",
            "payments.view_all",
            "payments.verify",
            "payments.reconcile",
            "fees.manage",
        }
    ),
    ROLE_ADMIN: frozenset(
        {
            "courses.manage",
            "courses.enroll",
            "enrollments.manage",
            "assignments.view",
            "reports.view",
            "payments.view",
            "payments.view_all",
            "payments.verify",
            "payments.reconcile",
            "fees.manage",
        }
    ),
}

ROLE_HOME: dict[str, str] = {
    ROLE_ADMIN: "/admin/dashboard",
    ROLE_INSTRUCTOR: "/instructor/dashboard",
    ROLE_STUDENT: "/student/dashboard",
    ROLE_FINANCE_OFFICER: "/finance/dashboard",
}


def permissions_for(role: str | None) -> frozenset[str]:
    return ROLE_PERMISSIONS.get(role or "", frozenset())


def home_path_for(user: User | None) -> str:
    if not user:
        return "/"
    return ROLE_HOME.get(user.role, "/")


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in permissions_for(user.role)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (JSON API; no login page to redirect to).
            if not user or not user.is_active:
                return jsonify({"error": "authentication_required"}), 401
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
