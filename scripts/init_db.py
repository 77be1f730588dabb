import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.edulms.constants import ROLE_ADMIN
from app.edulms.models import User
from scripts._db_utils import create_schema, script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Create tables and the bootstrap admin in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@edulms.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///edulms.db").strip()

    create_schema(db_url)

    # Use a direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        u = s.query(User).filter(User.email == admin_email).one_or_none()
        if not u:
            u = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                role=ROLE_ADMIN,
                is_active=True,
            )
            s.add(u)
        elif u.role != ROLE_ADMIN:
            u.role = ROLE_ADMIN

    print("Seed complete.")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
