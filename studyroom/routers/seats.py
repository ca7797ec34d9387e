from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date

from ..database import get_db
from ..services.seat_inventory import initialize_default_seats, get_seat_layout
from ..utils.dependencies import Actor, get_current_actor, require_admin
from ..utils.rate_limiter import limiter, get_rate_limit

router = APIRouter(prefix="/api/seats", tags=["Seats"])


@router.post("/initialize")
@router.post("/initialize/")
@limiter.limit(get_rate_limit("admin"))
async def initialize_seats(
    request: Request,
    db: Session = Depends(get_db),
    admin: Actor = Depends(require_admin)
):
    """Create the default room layout (no-op when seats exist)"""
    created = initialize_default_seats(db, admin)
    return {"created": created}


@router.get("/layout")
@router.get("/layout/")
@limiter.limit(get_rate_limit("occupancy"))
async def read_layout(
    request: Request,
    resource_type: Optional[str] = Query(None),
    time_slot: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    Room layout by row. Pass resource_type, time_slot and both dates to see
    which seats are held over that range.
    """
    return get_seat_layout(db, resource_type, time_slot, start_date, end_date)
