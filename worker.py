#!/usr/bin/env python
"""
Lifecycle Sweeper Worker

Standalone process that runs the lifecycle sweep on an interval:
1. Expires unconfirmed cash holds
2. Expires finished memberships
3. Activates memberships whose start date has arrived
4. Purges abandoned registration drafts
5. Issues membership IDs that payment callbacks could not

Run with:
    python worker.py

Or with environment:
    SWEEPER_INTERVAL_MINUTES=1 SWEEPER_ENABLED=false python worker.py

Set SWEEPER_ENABLED=false on the API when this worker runs, so only one
process sweeps.
"""

import os
import sys
import time
import logging
import signal

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from studyroom.config import settings
from studyroom.database import SessionLocal
from studyroom.services.sweeper_scheduler import run_sweep
from studyroom.utils.logging_config import setup_logging

logger = logging.getLogger("worker")

POLL_INTERVAL = settings.sweeper_interval_minutes * 60  # seconds
RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current pass...")
    RUNNING = False


def run_cycle(cycle: int, session_factory=SessionLocal):
    """One sweep pass; a failed pass is logged and retried next cycle"""
    start_time = time.time()
    try:
        result = run_sweep(session_factory)
    except Exception as e:
        logger.error(f"Critical error in cycle {cycle}: {e}")
        return None

    duration = time.time() - start_time
    if result.skipped:
        logger.warning(f"Cycle {cycle}: skipped ({result.skip_reason})")
    elif result.total_changes or result.batch_errors:
        logger.info(
            f"Cycle {cycle}: "
            f"activated={result.activated} expired={result.expired} "
            f"cash_expired={result.cash_expired} drafts_purged={result.drafts_purged} "
            f"ids_issued={result.identifiers_issued} batch_errors={result.batch_errors} | "
            f"{duration:.2f}s"
        )
    return result


def run_worker():
    """Main worker loop"""
    logger.info("Starting lifecycle sweeper worker")
    logger.info(f"Poll interval: {POLL_INTERVAL}s, batch size: {settings.sweeper_batch_size}")

    cycle = 0
    while RUNNING:
        cycle += 1
        run_cycle(cycle)

        # Sleep in short steps so shutdown signals are honoured promptly
        slept = 0
        while RUNNING and slept < POLL_INTERVAL:
            time.sleep(1)
            slept += 1

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    setup_logging(level=settings.log_level, json_format=settings.log_json)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_worker()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
