"""
Sweeper Router - status and manual control of the lifecycle sweeper.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.lifecycle_sweeper import LifecycleSweeper
from ..services.sweeper_scheduler import get_sweeper_status, trigger_manual_sweep
from ..utils.dependencies import Actor, require_admin
from ..utils.rate_limiter import limiter, get_rate_limit

router = APIRouter(prefix="/api/sweeper", tags=["Sweeper"])


@router.get("/status")
@router.get("/status/")
async def sweeper_status(
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin)
):
    """Scheduler state plus what the next passes will have to do"""
    return {
        "scheduler": get_sweeper_status(),
        "report": LifecycleSweeper(db).expiry_report(),
    }


@router.post("/run")
@router.post("/run/")
@limiter.limit(get_rate_limit("admin"))
async def run_sweeper(
    request: Request,
    admin: Actor = Depends(require_admin)
):
    """Run one sweep pass now"""
    return trigger_manual_sweep()
