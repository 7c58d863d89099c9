#!/usr/bin/env python3
"""Start the ARQ attribution worker or the cron scheduler.

USAGE:
    python -m attribution_engine.workers.start_arq_worker
    python -m attribution_engine.workers.start_arq_worker --scheduler

    Or directly:
    arq attribution_engine.workers.arq_worker.WorkerSettings
    arq attribution_engine.workers.arq_worker.SchedulerSettings
"""

import argparse
import logging
import sys

from arq import run_worker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main(argv=None):
    """Start the ARQ worker (or the scheduler with --scheduler)."""
    parser = argparse.ArgumentParser(description="Attribution ARQ worker")
    parser.add_argument("--scheduler", action="store_true", help="Run the cron scheduler instead of the job worker")
    args = parser.parse_args(argv)

    from attribution_engine.workers.arq_worker import SchedulerSettings, WorkerSettings

    settings_cls = SchedulerSettings if args.scheduler else WorkerSettings
    logger.info("Starting ARQ %s...", "scheduler" if args.scheduler else "worker")
    run_worker(settings_cls)


if __name__ == "__main__":
    main()
