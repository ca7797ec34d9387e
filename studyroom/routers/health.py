"""
Health Check Endpoints

- /health/live - process is up
- /health/ready - database reachable, so requests can be served
- /health/detailed - every dependency plus sweeper state (admin only)
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime, timezone
import time
import httpx

from ..database import get_db
from ..config import settings
from ..services.sweeper_scheduler import get_sweeper_status
from ..utils.dependencies import Actor, require_admin

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Round-trip a trivial query and time it"""
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        return {"status": "down", "error": str(e)[:100]}
    finally:
        db.rollback()
    return {
        "status": "up",
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "type": db.bind.dialect.name
    }


async def get_notifier_health() -> dict:
    """Reachability of the notification gateway, if one is configured"""
    if not settings.notification_webhook_url:
        return {"status": "not_configured"}

    started = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
            response = await client.head(settings.notification_webhook_url)
    except httpx.TimeoutException:
        return {"status": "timeout"}
    except httpx.HTTPError as e:
        return {"status": "down", "error": str(e)[:50]}

    if response.status_code >= 500:
        return {"status": "degraded", "http_status": response.status_code}
    return {"status": "up", "latency_ms": round((time.perf_counter() - started) * 1000, 2)}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/live")
@router.get("/live/")
async def liveness_check():
    return {"status": "alive", "timestamp": now_iso()}


@router.get("/ready")
@router.get("/ready/")
async def readiness_check(db: Session = Depends(get_db)):
    """
    Ready once the database answers. The notification gateway is not
    required; a failed notification never blocks a reservation.
    """
    database = get_db_health(db)
    if database["status"] != "up":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not_ready", "reason": "database_unavailable", "timestamp": now_iso()}
        )

    return {
        "status": "ready",
        "timestamp": now_iso(),
        "environment": settings.environment,
        "database": database,
        "sweeper_running": get_sweeper_status()["running"]
    }


@router.get("/detailed")
@router.get("/detailed/")
async def detailed_health(
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin)
):
    database = get_db_health(db)
    notifier = await get_notifier_health()
    sweeper = get_sweeper_status()

    overall = "healthy"
    if database["status"] != "up":
        overall = "unhealthy"
    elif notifier["status"] not in ("up", "not_configured") or (sweeper["enabled"] and not sweeper["running"]):
        overall = "degraded"

    return {
        "status": overall,
        "timestamp": now_iso(),
        "environment": settings.environment,
        "components": {
            "database": database,
            "notifier": notifier,
            "sweeper": sweeper
        }
    }
