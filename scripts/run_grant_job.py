#!/usr/bin/env python3
"""
Run one entitlement grant job: monthly, fiscal annual, or attendance award.

Meant for an external scheduler (cron).  Subjects and attendance come from a
YAML roster (see leave_services/directory.py for the format).

Usage:
    python3 scripts/run_grant_job.py <job> --directory <roster.yaml> [options]

Examples:
    # Daily monthly grant run for today
    python3 scripts/run_grant_job.py monthly --directory roster.yaml

    # Fiscal annual grant, replayed for Jan 1
    python3 scripts/run_grant_job.py fiscal --directory roster.yaml --date 2025-01-01

    # Quarterly attendance award against a local SQLite file
    python3 scripts/run_grant_job.py attendance --directory roster.yaml \\
        --db-url sqlite:///leave.db --create-tables

Exit codes:
    0  run COMPLETED
    1  argument, configuration or database error
    2  run PARTIALLY_COMPLETED (some subjects failed)
    3  run FAILED, or another run for the same day is still RUNNING
"""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

JOBS = {
    "monthly": "leave.monthly_grant",
    "fiscal": "leave.fiscal_annual_grant",
    "attendance": "leave.attendance_award",
}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one entitlement grant job and print its summary.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("job", choices=sorted(JOBS), help="Which grant job to run.")
    parser.add_argument(
        "--directory",
        required=True,
        type=Path,
        help="YAML roster of subjects and attendance.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: $LEAVE_LEDGER_CONFIG or packaged defaults).",
    )
    parser.add_argument(
        "--date",
        type=lambda s: date.fromisoformat(s),
        default=None,
        help="Business date (YYYY-MM-DD). Default: today.",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="Database URL (default: database.url from the configuration).",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print one line per subject.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    roster_path = args.directory.resolve()
    if not roster_path.is_file():
        print(f"ERROR: Roster not found: {roster_path}", file=sys.stderr)
        return 1

    # Lazy imports so we fail fast on args first
    from leave_batch.domain.types import BatchItemStatus, BatchJobStatus
    import leave_batch.models  # noqa: F401  registers batch tables
    from leave_batch.orchestrator import BatchOrchestrator
    from leave_config import get_active_config
    from leave_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
    )
    from leave_kernel.domain.clock import DeterministicClock, SystemClock
    from leave_kernel.exceptions import BatchAlreadyRunningError
    from leave_kernel.logging_config import configure_logging
    from leave_services.directory import StaticSubjectDirectory

    try:
        config = get_active_config(args.config)
    except Exception as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    configure_logging(level=config.logging.level)

    try:
        directory = StaticSubjectDirectory.from_yaml(roster_path)
    except (KeyError, ValueError) as e:
        print(f"ERROR: Malformed roster: {e}", file=sys.stderr)
        return 1

    try:
        init_engine_from_url(args.db_url or config.database.url, echo=config.database.echo)
        if args.create_tables:
            create_tables()
    except Exception as e:
        print(f"ERROR: Database init failed: {e}", file=sys.stderr)
        return 1

    clock = DeterministicClock.at_date(args.date) if args.date else SystemClock()
    orchestrator = BatchOrchestrator.from_config(
        config, get_session_factory(), directory, clock=clock,
    )

    task_type = JOBS[args.job]
    print(f"Running {task_type} for {clock.today().isoformat()}...")
    try:
        result = orchestrator.run(task_type)
    except BatchAlreadyRunningError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 3

    print(f"  Job:      {result.job_id} (attempt {result.attempt})")
    print(f"  Status:   {result.status.value}")
    print(
        f"  Subjects: {result.total_items} "
        f"(granted {result.granted}, skipped {result.skipped}, failed {result.failed})"
    )
    if args.verbose:
        for item in result.item_results:
            detail = item.error_message or (item.result_data or {}).get("reason", "")
            print(f"    {item.item_key}: {item.status.value} {detail}".rstrip())
    else:
        for item in result.items_with_status(BatchItemStatus.FAILED)[:10]:
            print(f"    {item.item_key}: {item.error_code} {item.error_message}")

    if result.status == BatchJobStatus.COMPLETED:
        return 0
    if result.status == BatchJobStatus.PARTIALLY_COMPLETED:
        return 2
    return 3


if __name__ == "__main__":
    sys.exit(main())
