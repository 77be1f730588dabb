import pytest
from werkzeug.security import generate_password_hash

from app.edulms import create_app
from app.edulms.db import session_scope
from app.edulms.models import Base, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PAYMENT_CALLBACK_TOKEN", "cb-secret")
    for k in ("PAYMENT_GATEWAY_CONSUMER_KEY", "PAYMENT_GATEWAY_CONSUMER_SECRET", "PAYMENT_CALLBACK_URL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add_all(
            [
                User(email="admin@example.com", password_hash=generate_password_hash("pw"), role="admin", is_active=True),
                User(email="student@example.com", password_hash=generate_password_hash("pw"), role="student", is_active=True),
            ]
        )

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_and_index(client):
    r = client.get("/")
    assert r.json["authenticated"] is False

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["redirect"] == "/admin/dashboard"
    assert r.json["csrf_token"]

    r = client.get("/")
    assert r.json["authenticated"] is True
    assert r.json["user"]["role"] == "admin"
    assert "courses.manage" in r.json["permissions"]


def test_login_rejects_bad_password(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"


def test_api_requires_authentication(client):
    r = client.get("/api/courses/1")
    assert r.status_code == 401
    assert r.json["error"] == "authentication_required"


def test_missing_permission_is_403(client):
    r = client.post("/auth/login", json={"email": "student@example.com", "password": "pw"})
    token = r.json["csrf_token"]
    r = client.post("/api/courses", json={"course_code": "CS1"}, headers={"X-CSRF-Token": token})
    assert r.status_code == 403
    assert r.json["missing_permission"] == "courses.manage"


def test_csrf_required_on_mutations(client):
    client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    r = client.post("/api/courses", json={"course_code": "CS1"})
    assert r.status_code == 400
    assert r.json["error"] == "csrf_failed"


def test_engine_errors_render_as_json(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    r = client.post(
        "/api/courses",
        json={"course_code": "", "title": "", "max_students": 0, "start_date": "2024-01-01"},
        headers={"X-CSRF-Token": r.json["csrf_token"]},
    )
    assert r.status_code == 400
    assert r.json["error"] == "invalid_course"
    assert r.json["kind"] == "validation"


def test_logout(client):
    client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/").json["authenticated"] is False
