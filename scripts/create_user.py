#!/usr/bin/env python3
"""Create a user or change an existing user's role (idempotent).

Usage:
  python scripts/create_user.py --email jane@example.edu --role instructor --password s3cret
"""

import argparse
import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.edulms.models import User
from app.edulms.rbac import ROLE_PERMISSIONS
from scripts._db_utils import script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", required=True, choices=sorted(ROLE_PERMISSIONS), help="Role to assign")
    parser.add_argument("--name", default=None)
    parser.add_argument("--phone", default=None, help="Payer phone number (students)")
    parser.add_argument("--password", default=None, help="Required when creating a new user")
    args = parser.parse_args()

    email = args.email.strip().lower()
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///edulms.db").strip()
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email == email).one_or_none()
        if user:
            if user.role == args.role:
                print(f"User already has role {args.role}: {email}")
                return
            user.role = args.role
            print(f"Role of {email} set to {args.role}")
            return
        if not args.password:
            print("--password is required to create a new user.")
            sys.exit(2)
        s.add(
            User(
                email=email,
                name=args.name,
                phone=args.phone,
                password_hash=generate_password_hash(args.password),
                role=args.role,
                is_active=True,
            )
        )
        print(f"Created {args.role} {email}")


if __name__ == "__main__":
    main()
