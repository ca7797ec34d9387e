"""
Reservation Allocator

Decides whether a (tier, time slot, date range) can be booked and picks the
seat. The check and the write happen in one unit of work:

- seat rows (and the member's row) are locked FOR UPDATE on PostgreSQL, in
  label order; SQLite transactions take the write lock at BEGIN
- after the new row is flushed, the overlap query runs again excluding it;
  any conflict rolls everything back

Nothing is committed until the reservation is known to be alone on its seat.
"""

import time
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import ConflictError, ConflictKind, NotFoundError, ValidationError
from ..models.reservation import (
    Reservation,
    PaymentMethod,
    PaymentStatus,
    LifecycleStatus,
    TimeSlot,
    DurationCode,
)
from ..models.seat import Seat
from ..models.user import User
from ..utils.db_helpers import acquire_row_lock, lock_rows_in_order, storage_guard, AtomicCounter
from ..utils.logging_config import get_logger
from ..utils.metrics import (
    allocation_duration_seconds,
    record_allocation_conflict,
    record_reservation_created,
)
from ..utils.time_utils import local_today, membership_end_date, utcnow
from .interval_store import find_active_reservation, find_conflicts, occupied_labels

logger = get_logger(__name__)


def _display_name(db: Session, user_id: str) -> str:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return ""
    return user.full_name or user.email


def pick_seat(seats: List[Seat], occupied: Dict[str, Reservation], resource_type: str) -> Optional[Seat]:
    """
    First free seat that can be booked under ``resource_type``.

    Regular seats go first, then Premium, Window, Corner and Accessible;
    ties break on label.
    """
    free = [
        seat for seat in seats
        if seat.is_bookable and seat.supports(resource_type) and seat.label not in occupied
    ]
    if not free:
        return None
    return sorted(free, key=lambda s: (s.priority, s.label))[0]


def validate_allocation_request(
    resource_type: str,
    time_slot: str,
    start_date: date,
    end_date: date,
    duration_code: str,
    payment_method: str,
    amount,
    today: date
) -> Decimal:
    """
    Reject malformed requests before any storage access.

    Returns the amount as a Decimal.
    """
    if resource_type not in settings.resource_type_list:
        raise ValidationError(f"Unknown resource type: {resource_type}")

    if time_slot not in [t.value for t in TimeSlot]:
        raise ValidationError(f"Unknown time slot: {time_slot}")

    if duration_code not in [d.value for d in DurationCode]:
        raise ValidationError(f"Unknown duration: {duration_code}")

    if payment_method not in [m.value for m in PaymentMethod]:
        raise ValidationError(f"Unknown payment method: {payment_method}")

    try:
        amount = Decimal(str(amount if amount is not None else 0))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount}")
    if amount < 0:
        raise ValidationError("Amount cannot be negative")

    if start_date > end_date:
        raise ValidationError("Start date must be on or before end date")

    if start_date < today:
        raise ValidationError("Start date cannot be in the past")

    latest_start = today + timedelta(days=settings.max_advance_days)
    if start_date > latest_start:
        raise ValidationError(
            f"Membership must start within {settings.max_advance_days} days (by {latest_start.isoformat()})"
        )

    expected_end = membership_end_date(start_date, duration_code)
    if end_date != expected_end:
        raise ValidationError(
            f"{duration_code} starting {start_date.isoformat()} ends on {expected_end.isoformat()}, "
            f"not {end_date.isoformat()}"
        )

    return amount


class ReservationAllocator:
    """
    Allocates seats for new reservations.

    Usage:
        allocator = ReservationAllocator(db)
        reservation = allocator.allocate(user_id, "Standard", "Day", (start, end), "1 Month", "cash", 800)
    """

    def __init__(self, db: Session):
        self.db = db

    def allocate(
        self,
        user_id: str,
        resource_type: str,
        time_slot: str,
        date_range: Tuple[date, date],
        duration_code: str,
        payment_method: str,
        amount=0,
        preferred_seat: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Book a seat or raise.

        Raises:
            ValidationError: malformed request
            NotFoundError: unknown member
            ConflictError: ACTIVE_MEMBERSHIP_EXISTS, SEAT_TAKEN or NO_CAPACITY
            StorageUnavailableError: database unreachable
        """
        now = now or utcnow()
        start_date, end_date = date_range
        preferred_seat = (preferred_seat or "").strip().upper() or None

        amount = validate_allocation_request(
            resource_type, time_slot, start_date, end_date,
            duration_code, payment_method, amount, local_today(now)
        )

        started = time.perf_counter()
        try:
            with allocation_duration_seconds.time(resource_type=resource_type):
                with storage_guard(self.db, "allocation"):
                    reservation = self._allocate_in_transaction(
                        user_id, resource_type, time_slot, start_date, end_date,
                        duration_code, payment_method, amount, preferred_seat, now
                    )
        except ConflictError as e:
            record_allocation_conflict(e.kind.value)
            logger.info(f"Allocation refused for {user_id}: {e.kind.value} ({e.message})")
            raise
        except Exception:
            self.db.rollback()
            raise

        record_reservation_created(resource_type, reservation.payment_status)
        logger.reservation_created(
            reservation.id,
            user_id,
            reservation.seat_label,
            reservation.payment_status,
            duration_ms=round((time.perf_counter() - started) * 1000, 2)
        )
        return reservation

    def _allocate_in_transaction(
        self,
        user_id: str,
        resource_type: str,
        time_slot: str,
        start_date: date,
        end_date: date,
        duration_code: str,
        payment_method: str,
        amount: Decimal,
        preferred_seat: Optional[str],
        now: datetime
    ) -> Reservation:
        db = self.db

        # Serializes allocations by the same member
        user = acquire_row_lock(db, User, User.id == user_id)
        if user is None:
            db.rollback()
            raise NotFoundError(f"User {user_id} not found")

        active = find_active_reservation(db, user_id, now)
        if active is not None:
            db.rollback()
            raise ConflictError(
                ConflictKind.ACTIVE_MEMBERSHIP_EXISTS,
                "You already have an active membership",
                seat_label=active.seat_label,
                conflicting_range=(active.start_date, active.end_date),
                reservation_id=active.id
            )

        if preferred_seat:
            seat = self._lock_preferred_seat(preferred_seat, resource_type)
            clash = find_conflicts(
                db, resource_type, time_slot, start_date, end_date,
                seat_label=seat.label, now=now
            )
            if clash:
                raise self._seat_taken(seat.label, clash[0])
        else:
            seats = lock_rows_in_order(
                db, Seat, Seat.available_for.contains(resource_type), Seat.label
            )
            occupied = occupied_labels(db, resource_type, time_slot, start_date, end_date, now=now)
            seat = pick_seat(seats, occupied, resource_type)
            if seat is None:
                db.rollback()
                raise ConflictError(
                    ConflictKind.NO_CAPACITY,
                    f"No {resource_type} seat is free for {time_slot} "
                    f"from {start_date.isoformat()} to {end_date.isoformat()}"
                )

        is_cash = payment_method == PaymentMethod.CASH.value
        reservation = Reservation(
            user_id=user_id,
            resource_type=resource_type,
            time_slot=time_slot,
            duration_code=duration_code,
            start_date=start_date,
            end_date=end_date,
            seat_label=seat.label,
            payment_method=payment_method,
            payment_status=PaymentStatus.CASH_PENDING.value if is_cash else PaymentStatus.PENDING.value,
            lifecycle_status=LifecycleStatus.NOT_YET_ACTIVE.value,
            amount=amount,
            created_at=now,
            updated_at=now,
        )
        db.add(reservation)
        db.flush()

        # Re-check with our own row in place
        clash = find_conflicts(
            db, resource_type, time_slot, start_date, end_date,
            seat_label=seat.label, exclude_reservation_id=reservation.id, now=now
        )
        if clash:
            logger.warning(f"Seat {seat.label} taken concurrently; rolling back reservation for {user_id}")
            raise self._seat_taken(seat.label, clash[0])

        AtomicCounter.increment(db, Seat, Seat.id == seat.id, "total_allocations")
        db.commit()
        return reservation

    def _lock_preferred_seat(self, label: str, resource_type: str) -> Seat:
        seat = acquire_row_lock(self.db, Seat, Seat.label == label)
        if seat is None:
            self.db.rollback()
            raise ValidationError(f"Seat {label} does not exist")
        if not seat.is_bookable:
            self.db.rollback()
            raise ValidationError(f"Seat {label} is not available for booking")
        if not seat.supports(resource_type):
            self.db.rollback()
            raise ValidationError(f"Seat {label} cannot be booked under {resource_type}")
        return seat

    def _seat_taken(self, label: str, holder: Reservation) -> ConflictError:
        occupied_by = _display_name(self.db, holder.user_id)
        conflicting_range = (holder.start_date, holder.end_date)
        self.db.rollback()
        return ConflictError(
            ConflictKind.SEAT_TAKEN,
            f"Seat {label} is taken by {occupied_by or 'another member'} "
            f"from {conflicting_range[0].isoformat()} to {conflicting_range[1].isoformat()}",
            seat_label=label,
            occupied_by=occupied_by,
            conflicting_range=conflicting_range,
        )


def allocate(db: Session, user_id: str, resource_type: str, time_slot: str, date_range: Tuple[date, date],
             duration_code: str, payment_method: str, amount=0, preferred_seat: Optional[str] = None,
             now: Optional[datetime] = None) -> Reservation:
    return ReservationAllocator(db).allocate(
        user_id, resource_type, time_slot, date_range, duration_code,
        payment_method, amount=amount, preferred_seat=preferred_seat, now=now
    )
