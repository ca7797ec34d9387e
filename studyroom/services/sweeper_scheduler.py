"""
Sweeper Scheduler

Runs the lifecycle sweep inside the API process every
SWEEPER_INTERVAL_MINUTES using APScheduler. ``worker.py`` runs the same pass
as a standalone process for deployments that keep the API stateless.

The module globals below are bookkeeping for the status endpoint only.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..database import SessionLocal
from .lifecycle_sweeper import LifecycleSweeper, SweepResult

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None
_last_run_time: Optional[datetime] = None
_last_run_result: Optional[Dict] = None
_runs_completed: int = 0
_runs_skipped: int = 0

SWEEP_JOB_ID = "lifecycle_sweep"


def run_sweep(session_factory=SessionLocal, now: Optional[datetime] = None) -> SweepResult:
    """
    Run one sweep pass in a fresh session and record it for the status query.
    """
    global _last_run_time, _last_run_result, _runs_completed, _runs_skipped

    db = session_factory()
    try:
        result = LifecycleSweeper(db).run_pass(now=now)
    finally:
        db.close()

    _last_run_time = datetime.utcnow()
    _last_run_result = result.to_dict()
    if result.skipped:
        _runs_skipped += 1
    else:
        _runs_completed += 1
    return result


async def run_sweeper_job():
    """
    Job function called by the scheduler.

    Never raises: a failed pass is logged and the next interval retries.
    """
    try:
        run_sweep()
    except Exception as e:
        logger.error(f"Scheduled sweep failed: {e}")


def start_sweeper_scheduler(interval_minutes: Optional[int] = None) -> bool:
    """
    Start the sweeper on a fixed interval.

    Returns:
        True if scheduler started successfully, False otherwise
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Sweeper scheduler is already running")
        return True

    interval = interval_minutes or settings.sweeper_interval_minutes

    try:
        _scheduler = AsyncIOScheduler(timezone=settings.business_timezone)
        _scheduler.add_job(
            run_sweeper_job,
            IntervalTrigger(minutes=interval, timezone=settings.business_timezone),
            id=SWEEP_JOB_ID,
            name=f"Lifecycle sweep every {interval} min",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(_scheduler.timezone),
        )
        _scheduler.start()

        logger.info(f"Sweeper scheduler started (every {interval} min)")
        return True

    except Exception as e:
        logger.error(f"Failed to start sweeper scheduler: {e}")
        _scheduler = None
        return False


def stop_sweeper_scheduler() -> bool:
    """
    Stop the sweeper gracefully.

    Returns:
        True if scheduler stopped successfully, False otherwise
    """
    global _scheduler

    if _scheduler is None:
        return True

    try:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Sweeper scheduler stopped")
        return True
    except Exception as e:
        logger.error(f"Failed to stop sweeper scheduler: {e}")
        return False


def get_sweeper_status() -> Dict:
    """
    Get the current status of the sweeper.

    Returns:
        Dict with scheduler status information
    """
    status = {
        "enabled": settings.sweeper_enabled,
        "running": False,
        "interval_minutes": settings.sweeper_interval_minutes,
        "next_run": None,
        "last_run": None,
        "last_result": None,
        "runs_completed": _runs_completed,
        "runs_skipped": _runs_skipped,
    }

    if _scheduler is not None and _scheduler.running:
        status["running"] = True
        job = _scheduler.get_job(SWEEP_JOB_ID)
        if job and job.next_run_time:
            status["next_run"] = job.next_run_time.isoformat()

    if _last_run_time:
        status["last_run"] = _last_run_time.isoformat()

    if _last_run_result:
        status["last_result"] = _last_run_result

    return status


def trigger_manual_sweep(session_factory=SessionLocal) -> Dict:
    """
    Run a sweep pass immediately.

    Used by the API endpoint for manual control.
    """
    logger.info("Manual sweep triggered")
    return run_sweep(session_factory).to_dict()
