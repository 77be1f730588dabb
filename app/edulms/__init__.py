import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.edulms.config import load_config
from app.edulms.db import init_db, teardown_db_session
from app.edulms.errors import EngineError, error_response
from app.edulms.routes import bp as routes_bp
from app.edulms.auth import bp as auth_bp, load_current_user
from app.edulms.modules.enrollment.routes import bp as enrollment_bp
from app.edulms.modules.assignments.routes import bp as assignments_bp
from app.edulms.modules.grading.routes import bp as grading_bp
from app.edulms.modules.payments.routes import bp as payments_bp
from app.edulms.modules.payments.gateway import gateway_from_config

REQUIRED_TABLES = (
    "users",
    "audit_events",
    "courses",
    "enrollments",
    "assignments",
    "submissions",
    "grades",
    "fee_structures",
    "payments",
    "payment_notes",
    "payment_callback_logs",
    "student_fee_assignments",
)

# Endpoints that authenticate another way (credentials, shared callback token).
CSRF_EXEMPT_ENDPOINTS = ("payments.payments_callback",)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.edulms.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            endpoint = request.endpoint or ""
            if endpoint.startswith("auth.") or endpoint in CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf_failed", "message": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("PAYMENT_CALLBACK_TOKEN"):
            raise RuntimeError("PAYMENT_CALLBACK_TOKEN must be set in production.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Payment gateway health check (log loudly on partial configuration)
    gateway = gateway_from_config(app.config)
    app.extensions["payment_gateway"] = gateway
    if gateway is None:
        partial = [
            key
            for key in ("PAYMENT_GATEWAY_CONSUMER_KEY", "PAYMENT_GATEWAY_SHORTCODE", "PAYMENT_CALLBACK_URL")
            if app.config.get(key)
        ]
        if partial:
            app.logger.error("PAYMENT GATEWAY CONFIG ERROR: partially configured (%s set); dispatch disabled", ", ".join(partial))
        else:
            app.logger.info("Payment gateway not configured; payments stay pending until verified manually")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(enrollment_bp, url_prefix="/api")
    app.register_blueprint(assignments_bp, url_prefix="/api")
    app.register_blueprint(grading_bp, url_prefix="/api")
    app.register_blueprint(payments_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): detect tables the code expects but the DB lacks.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])
    app.config.setdefault("_schema_health_logged", False)

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            engine = app.extensions.get("sqlalchemy_engine")
            if engine is None:
                raise RuntimeError("sqlalchemy_engine not initialized")
            insp = sa_inspect(engine)
            for table in REQUIRED_TABLES:
                if not insp.has_table(table):
                    missing.append(f"{table} (table)")
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)

        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing and not app.config.get("_schema_health_logged"):
            app.config["_schema_health_logged"] = True
            app.logger.error("DB schema out of date; run `python scripts/init_db.py`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok"):
            return None
        # Tables may have been created after boot (tests, first deploy); re-check once per request until healthy.
        _run_schema_health_check()
        if app.config.get("_schema_health_ok"):
            return None
        if request.path.startswith("/api"):
            return jsonify({"error": "schema_out_of_date", "missing": app.config.get("_schema_health_missing") or []}), 500
        return None

    @app.errorhandler(EngineError)
    def _err_engine(e: EngineError):  # type: ignore[no-redef]
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        app.logger.info(
            "Engine error: code=%s kind=%s path=%s request_id=%s",
            e.code,
            e.kind,
            request.path,
            getattr(g, "request_id", None),
        )
        return error_response(e)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "internal_error", "request_id": rid}), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "forbidden", "missing_permission": missing}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "path": request.path}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "payload_too_large"}), 413

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
