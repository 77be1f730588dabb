#!/usr/bin/env python3
"""Sweep pending gateway payments and apply whatever the gateway now reports.

Meant for a cron/scheduled job; callbacks that never arrived are recovered here.

Usage:
  python scripts/reconcile_payments.py --older-than-minutes 10 --limit 100
"""

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.edulms import create_app
from app.edulms.db import session_scope
from app.edulms.modules.payments.service import reconcile_pending


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--older-than-minutes", type=int, default=None)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    app = create_app()
    gateway = app.extensions.get("payment_gateway")
    if gateway is None:
        print("Payment gateway is not configured; nothing to reconcile.")
        sys.exit(1)

    minutes = args.older_than_minutes or app.config["PAYMENT_RECONCILE_AFTER_MINUTES"]
    with app.app_context(), session_scope(app) as s:
        summary = reconcile_pending(s, gateway, older_than_minutes=minutes, limit=args.limit)
    print(json.dumps(summary.to_dict(), indent=2))


if __name__ == "__main__":
    main()
