#!/usr/bin/env python3
"""Run the telemetry monitor as a long-lived process.

Polls every MONITOR_INTERVAL_SECONDS until SIGINT/SIGTERM. Shutdown is
cooperative: a cycle in its fetch is abandoned, a cycle writing to the
store finishes first.

Examples:
  python backend/scripts/run_monitor.py
  python backend/scripts/run_monitor.py --once --local-lock
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from core.logging import configure_logging
from workers.jobs import run_monitor_cycle, run_monitor_loop
from workers.runner import JobStatus, LocalJobLock


async def _run_forever(settings, lock_factory) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops lack add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    await run_monitor_loop(settings, stop_event, lock_factory=lock_factory)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Poll slot machine telemetry and escalate alerts")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument(
        "--local-lock",
        action="store_true",
        help="Use an in-process lock instead of Redis (single-host runs only)",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging()
    lock_factory = LocalJobLock if args.local_lock else None

    if args.once:
        record = asyncio.run(run_monitor_cycle(settings, lock_factory=lock_factory))
        return 0 if record.status == JobStatus.SUCCESS else 1

    return asyncio.run(_run_forever(settings, lock_factory))


if __name__ == "__main__":
    raise SystemExit(main())
