"""
Interval Store

Overlap and occupancy queries over reservations. Seat occupancy is never
stored anywhere; every answer here is derived from reservation rows.

A reservation is occupying when its lifecycle is still open and either it
has been paid or it is a cash hold inside its collection window.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.reservation import (
    Reservation,
    PaymentStatus,
    LifecycleStatus,
    PAID_STATUSES,
    CLOSED_LIFECYCLES,
    derive_lifecycle_status,
)
from ..models.user import User
from ..utils.time_utils import utcnow, local_today

logger = logging.getLogger(__name__)


@dataclass
class OccupiedSeat:
    seat_label: str
    reservation_id: str
    user_id: str
    occupied_by: str
    start_date: date
    end_date: date
    payment_status: str


def cash_hold_cutoff(now: datetime, window_hours: Optional[int] = None) -> datetime:
    """Cash holds created before this instant no longer count"""
    hours = window_hours or settings.cash_collection_window_hours
    return now - timedelta(hours=hours)


def occupying_condition(now: datetime, window_hours: Optional[int] = None):
    """SQL predicate matching reservations that hold their seat at ``now``"""
    return and_(
        Reservation.lifecycle_status.notin_(CLOSED_LIFECYCLES),
        or_(
            Reservation.payment_status.in_(PAID_STATUSES),
            and_(
                Reservation.payment_status == PaymentStatus.CASH_PENDING.value,
                Reservation.created_at >= cash_hold_cutoff(now, window_hours)
            )
        )
    )


def is_occupying(reservation: Reservation, now: datetime, window_hours: Optional[int] = None) -> bool:
    """In-memory twin of ``occupying_condition``"""
    if reservation.lifecycle_status in CLOSED_LIFECYCLES:
        return False
    if reservation.payment_status in PAID_STATUSES:
        return True
    return (
        reservation.payment_status == PaymentStatus.CASH_PENDING.value
        and reservation.created_at >= cash_hold_cutoff(now, window_hours)
    )


def find_conflicts(
    db: Session,
    resource_type: str,
    time_slot: str,
    start_date: date,
    end_date: date,
    seat_label: Optional[str] = None,
    exclude_reservation_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> List[Reservation]:
    """
    Occupying reservations in the same (tier, time slot) whose inclusive
    range intersects ``[start_date, end_date]``.
    """
    now = now or utcnow()
    query = db.query(Reservation).populate_existing().filter(
        Reservation.resource_type == resource_type,
        Reservation.time_slot == time_slot,
        Reservation.seat_label.isnot(None),
        Reservation.start_date <= end_date,
        Reservation.end_date >= start_date,
        occupying_condition(now)
    )

    if seat_label:
        query = query.filter(Reservation.seat_label == seat_label)

    if exclude_reservation_id:
        query = query.filter(Reservation.id != exclude_reservation_id)

    return query.order_by(Reservation.seat_label, Reservation.start_date).all()


def occupied_labels(
    db: Session,
    resource_type: str,
    time_slot: str,
    start_date: date,
    end_date: date,
    exclude_reservation_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> Dict[str, Reservation]:
    """Seat label -> first conflicting reservation"""
    occupied: Dict[str, Reservation] = {}
    for reservation in find_conflicts(
        db, resource_type, time_slot, start_date, end_date,
        exclude_reservation_id=exclude_reservation_id, now=now
    ):
        occupied.setdefault(reservation.seat_label, reservation)
    return occupied


def get_occupancy(
    db: Session,
    resource_type: str,
    time_slot: str,
    start_date: date,
    end_date: date,
    now: Optional[datetime] = None
) -> List[OccupiedSeat]:
    """Seats held by someone for any day of the range, with their holders"""
    conflicts = find_conflicts(db, resource_type, time_slot, start_date, end_date, now=now)

    user_ids = {r.user_id for r in conflicts}
    names = {}
    if user_ids:
        names = {
            u.id: u.full_name or u.email
            for u in db.query(User).filter(User.id.in_(user_ids)).all()
        }

    return [
        OccupiedSeat(
            seat_label=r.seat_label,
            reservation_id=r.id,
            user_id=r.user_id,
            occupied_by=names.get(r.user_id, ""),
            start_date=r.start_date,
            end_date=r.end_date,
            payment_status=r.payment_status,
        )
        for r in conflicts
    ]


def get_reservation(db: Session, reservation_id: str) -> Optional[Reservation]:
    return db.query(Reservation).populate_existing().filter(Reservation.id == reservation_id).first()


def find_active_reservation(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None
) -> Optional[Reservation]:
    """
    The user's reservation whose derived lifecycle is active today.

    The stored column may lag behind the sweeper, so the date range and
    payment status decide.
    """
    now = now or utcnow()
    today = local_today(now)

    candidates = db.query(Reservation).populate_existing().filter(
        Reservation.user_id == user_id,
        Reservation.payment_status.in_(PAID_STATUSES),
        Reservation.lifecycle_status.notin_(CLOSED_LIFECYCLES),
        Reservation.start_date <= today,
        Reservation.end_date >= today
    ).all()

    for reservation in candidates:
        derived = derive_lifecycle_status(
            reservation.payment_status,
            reservation.lifecycle_status,
            reservation.start_date,
            reservation.end_date,
            today
        )
        if derived == LifecycleStatus.ACTIVE.value:
            return reservation
    return None

