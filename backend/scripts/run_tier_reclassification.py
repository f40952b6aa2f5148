#!/usr/bin/env python3
"""Run one loyalty tier reclassification batch and report the outcome.

Prints the run summary as JSON and exits with:
  0  batch completed (per-player failures are listed in the summary)
  1  batch-level failure (e.g. store unavailable)
  2  another reclassification is already running

Examples:
  python backend/scripts/run_tier_reclassification.py
  python backend/scripts/run_tier_reclassification.py --local-lock --pretty
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from core.logging import configure_logging
from workers.jobs import run_reclassification
from workers.runner import JobRunRecord, JobStatus, LocalJobLock

EXIT_CODES = {
    JobStatus.SUCCESS: 0,
    JobStatus.FAILED: 1,
    JobStatus.CANCELLED: 1,
    JobStatus.SKIPPED: 2,
}


def exit_code_for(record: JobRunRecord) -> int:
    return EXIT_CODES[record.status]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Recompute player loyalty tiers")
    parser.add_argument(
        "--local-lock",
        action="store_true",
        help="Use an in-process lock instead of Redis (single-host runs only)",
    )
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging()

    lock_factory = LocalJobLock if args.local_lock else None
    record = asyncio.run(run_reclassification(settings, lock_factory=lock_factory))

    summary = record.to_dict()
    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    else:
        print(json.dumps(summary, default=str))

    return exit_code_for(record)


if __name__ == "__main__":
    raise SystemExit(main())
