"""
Release phase: create missing tables, seed the bootstrap admin, then verify the
schema the app will check at boot is actually present.

Refuses to run against SQLite when ENV=production.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from sqlalchemy import inspect as sa_inspect

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def missing_tables(db_url: str) -> list[str]:
    from app.edulms import REQUIRED_TABLES
    from scripts._db_utils import create_script_engine

    engine = create_script_engine(db_url)
    try:
        insp = sa_inspect(engine)
        return [t for t in REQUIRED_TABLES if not insp.has_table(t)]
    finally:
        engine.dispose()


def run_release() -> None:
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print(f"=== EduLMS release start (ENV={env or '(unset)'}) ===", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)

    missing = missing_tables(db_url)
    if missing:
        raise RuntimeError(f"Schema incomplete after release; missing tables: {', '.join(missing)}")
    print("=== EduLMS release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
