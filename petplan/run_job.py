"""Command line entry point for running lifecycle jobs by hand.

Usage::

    python -m petplan.run_job renewal
    python -m petplan.run_job --status
    python -m petplan.run_job --db-health
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from .app.lifecycle import DatabaseError, UnknownJobError
from .app.schemas.jobs import DatabaseHealthResponse, JobRunResponse
from .app.services.lifecycle import build_lifecycle_services
from .config import load_settings
from .database import Database
from .jobs import JobName, LifecycleScheduler, resolve_job_name

logger = logging.getLogger("petplan.run_job")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a contract lifecycle job once.")
    parser.add_argument("job", nargs="?", help=f"one of: {', '.join(job.value for job in JobName)}")
    parser.add_argument("--status", action="store_true", help="print scheduler configuration and exit")
    parser.add_argument("--db-health", action="store_true", help="probe the database and exit")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not (args.job or args.status or args.db_health):
        parser.error("a job name, --status or --db-health is required")

    settings = load_settings()
    database = Database(settings)
    try:
        if args.db_health:
            healthy = database.check_health()
            snapshot = DatabaseHealthResponse.from_snapshot(database.health_snapshot())
            print(snapshot.model_dump_json(by_alias=True, indent=2))
            return 0 if healthy else 1

        services = build_lifecycle_services(settings, database)
        scheduler = LifecycleScheduler.from_settings(settings, services.renewal_service, services.reconciler)
        if args.status:
            print(json.dumps(scheduler.get_status(), indent=2))
            return 0

        try:
            job = resolve_job_name(args.job)
            services.notification_log.ensure_table()
            result = scheduler.run_job(job)
        except UnknownJobError as exc:
            parser.error(str(exc))
        except DatabaseError as exc:
            logger.error("Job %s aborted: %s", args.job, exc)
            return 2
        print(JobRunResponse.from_result(job.value, result).model_dump_json(indent=2))
        return 0
    finally:
        database.close()


if __name__ == "__main__":
    sys.exit(main())
