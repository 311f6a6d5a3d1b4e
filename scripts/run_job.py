"""Run one scheduled coach job against the configured database, bypassing HTTP auth.

Usage from the repository root:

    python -m scripts.run_job check-user-status
    python -m scripts.run_job generate-weekly-digest --db-path ./data/coach_jobs.db
"""
import argparse
import json
import sys
from typing import Optional

from app.core.config import get_settings
from app.core.errors import ConfigurationError, JobFailedError
from app.db import session as db_session
from app.services.proactive_notifier import check_user_status
from app.services.weekly_digest import generate_weekly_digest, resolve_summarizer

JOBS = ("check-user-status", "generate-weekly-digest")


def run(job: str, db_path: Optional[str]) -> dict:
    if db_path:
        db_session.configure_database(str(db_session.resolve_db_path(db_path)))
    db_session.create_tables()
    with db_session.session_scope() as db:
        if job == "check-user-status":
            return check_user_status(db)
        return generate_weekly_digest(db, resolve_summarizer(db, get_settings()))


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a scheduled coach job once.")
    parser.add_argument("job", choices=JOBS, help="Job to run.")
    parser.add_argument("--db-path", help="SQLite path (defaults to DB_PATH).")
    args = parser.parse_args(argv)

    try:
        result = run(args.job, args.db_path)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except JobFailedError as exc:
        print(json.dumps({"success": False, "error": str(exc)}, indent=2))
        return 1

    print(json.dumps(result, indent=2))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
