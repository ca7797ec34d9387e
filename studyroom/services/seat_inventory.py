"""
Seat Inventory

Seat records and the room layout. A seat knows nothing about who sits in
it; the layout joins seats with the interval store at read time.
"""

import logging
from datetime import date, datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from ..config import settings
from ..exceptions import PermissionDeniedError, ValidationError
from ..models.seat import Seat, SeatType
from ..utils.dependencies import Actor
from ..utils.time_utils import utcnow
from .interval_store import get_occupancy

logger = logging.getLogger(__name__)

DEFAULT_ROWS = ["A", "B", "C", "D", "E"]
SEATS_PER_ROW = 8


def seat_type_for(row_index: int, column: int, row_count: int = len(DEFAULT_ROWS),
                  seats_per_row: int = SEATS_PER_ROW) -> str:
    """Seat type from its position: edges are windows, front-left is premium"""
    seat_type = SeatType.REGULAR.value
    at_edge = column in (1, seats_per_row)
    if at_edge:
        seat_type = SeatType.WINDOW.value
        if row_index in (0, row_count - 1):
            seat_type = SeatType.CORNER.value
    if row_index == 0 and column <= 2:
        seat_type = SeatType.PREMIUM.value
    return seat_type


def default_layout(resource_types: Optional[List[str]] = None) -> List[Seat]:
    """Unsaved seats for the standard room: rows A-E, eight desks each"""
    tiers = ",".join(resource_types or settings.resource_type_list)
    seats = []
    for row_index, row in enumerate(DEFAULT_ROWS):
        for column in range(1, SEATS_PER_ROW + 1):
            seats.append(Seat(
                label=f"{row}{column:02d}",
                row=row,
                column=column,
                seat_type=seat_type_for(row_index, column),
                available_for=tiers,
                is_active=True,
                is_maintenance=False,
                total_allocations=0,
            ))
    return seats


def initialize_default_seats(db: Session, actor: Actor) -> int:
    """
    Create the default layout if the room has no seats yet.

    Returns the number of seats created (0 when already initialized).
    """
    if not actor.is_admin:
        raise PermissionDeniedError("Only admins can initialize the seat layout")

    existing = db.query(Seat).count()
    if existing:
        db.commit()
        logger.info(f"Seats already initialized ({existing} seats found)")
        return 0

    seats = default_layout()
    try:
        db.add_all(seats)
        db.commit()
    except IntegrityError:
        # Another admin initialized the room at the same moment
        db.rollback()
        logger.warning("Seat initialization raced with another request; keeping existing seats")
        return 0

    logger.info(f"Initialized {len(seats)} seats ({len(DEFAULT_ROWS)} rows x {SEATS_PER_ROW} seats)")
    return len(seats)


def get_seat_layout(
    db: Session,
    resource_type: Optional[str] = None,
    time_slot: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None
) -> Dict:
    """
    Seats grouped by row. With a full (tier, slot, range) scope every seat
    also says whether it is held and by whom.
    """
    if resource_type and resource_type not in settings.resource_type_list:
        raise ValidationError(f"Unknown resource type: {resource_type}")

    seats = db.query(Seat).filter(Seat.is_active == True).order_by(Seat.row, Seat.column).all()  # noqa: E712
    if resource_type:
        seats = [s for s in seats if s.supports(resource_type)]

    occupancy = {}
    scoped = bool(resource_type and time_slot and start_date and end_date)
    if scoped:
        if start_date > end_date:
            raise ValidationError("Start date must be on or before end date")
        for held in get_occupancy(db, resource_type, time_slot, start_date, end_date, now=now or utcnow()):
            occupancy.setdefault(held.seat_label, held)
    db.commit()

    rows: Dict[str, List[Dict]] = {}
    for seat in seats:
        held = occupancy.get(seat.label)
        rows.setdefault(seat.row, []).append({
            "label": seat.label,
            "column": seat.column,
            "seat_type": seat.seat_type,
            "available_for": seat.tiers,
            "is_maintenance": bool(seat.is_maintenance),
            "is_occupied": held is not None,
            "occupied_by": held.occupied_by if held else None,
            "occupied_until": held.end_date.isoformat() if held else None,
        })

    total = len(seats)
    occupied = sum(1 for s in seats if s.label in occupancy)
    maintenance = sum(1 for s in seats if s.is_maintenance)
    return {
        "rows": [{"row": row, "seats": row_seats} for row, row_seats in rows.items()],
        "stats": {
            "total": total,
            "occupied": occupied,
            "maintenance": maintenance,
            "available": total - occupied - maintenance if scoped else None,
        },
    }
