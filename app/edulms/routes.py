from flask import Blueprint, g, jsonify

from app.edulms.rbac import home_path_for, permissions_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    user = getattr(g, "current_user", None)
    if not user:
        return jsonify({"authenticated": False, "login": "/auth/login"})
    return jsonify(
        {
            "authenticated": True,
            "user": {"id": user.id, "email": user.email, "name": user.name, "role": user.role},
            "home": home_path_for(user),
            "permissions": sorted(permissions_for(user.role)),
        }
    )


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for container probes. No DB access, minimal overhead.
    """
    return "ok", 200
