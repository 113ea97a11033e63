# scripts/run_scheduler.py
"""
Run the billing jobs on their daily, weekly and monthly schedule.

    python -m scripts.run_scheduler
    python -m scripts.run_scheduler --once recurring_invoices
"""

import argparse
import logging
import signal
import threading

from billing.config import settings
from billing.jobs import build_scheduler
from billing.operations import get_operations

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Run scheduled billing jobs")
    parser.add_argument("--once", metavar="JOB", help="run a single job now and exit")
    args = parser.parse_args()

    scheduler = build_scheduler(get_operations())

    if args.once:
        if args.once not in scheduler.jobs:
            parser.error(f"unknown job {args.once!r}; choose from {', '.join(scheduler.jobs)}")
        result = scheduler.run_job(args.once)
        logger.info("Result: %s", result.model_dump_json() if result else "skipped")
        return

    stopped = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stopped.set())
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())

    scheduler.start()
    stopped.wait()
    scheduler.stop(timeout=30)


if __name__ == "__main__":
    main()
