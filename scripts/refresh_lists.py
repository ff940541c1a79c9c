"""
One-shot refresh of scheduled lists from the MIS database (cron-friendly).

Usage:
  python scripts/refresh_lists.py                 # all active lists
  python scripts/refresh_lists.py --list <id>     # one list
  python scripts/refresh_lists.py --dry-run       # fetch + reconcile, roll back
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv
from app.backoffice.modules.scheduled_lists.mis_source import MisSource
from app.backoffice.modules.scheduled_lists.models import OrderList
from app.backoffice.modules.scheduled_lists.refresh import refresh_all
from app.backoffice.modules.scheduled_lists.scheduler import ListRefreshScheduler
from scripts._db_utils import create_mis_engine, script_sessionmaker


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Refresh scheduled lists from MIS.")
    parser.add_argument("--list", dest="list_id", default=None, help="Refresh only this list id")
    parser.add_argument("--dry-run", action="store_true", help="Do not persist anything")
    args = parser.parse_args(argv)

    logging.basicConfig(level=(os.environ.get("LOG_LEVEL") or "INFO").upper(), format="%(levelname)s %(name)s: %(message)s")

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///backoffice.db").strip()
    mis_url = (os.environ.get("MIS_DATABASE_URL") or "").strip()
    if not mis_url:
        print("MIS_DATABASE_URL is not set.", flush=True)
        return 2

    source = MisSource(
        create_mis_engine(mis_url),
        timeout_seconds=float(os.environ.get("MIS_FETCH_TIMEOUT_SECONDS") or 20),
    )
    sm = script_sessionmaker(db_url)

    if args.dry_run:
        s = sm()
        try:
            lists = [s.get(OrderList, args.list_id)] if args.list_id else None
            stats = refresh_all(s, source, [l for l in lists if l] if lists else None, commit=False)
            s.rollback()
        finally:
            s.close()
        result = {"dry_run": True, **stats.to_dict()}
    else:
        scheduler = ListRefreshScheduler(sm, source)
        result = scheduler.run_once(trigger="script", list_id=args.list_id)

    print(json.dumps(result, indent=2, default=str), flush=True)
    return 0 if result and not result.get("failed") else 1


if __name__ == "__main__":
    sys.exit(main())
