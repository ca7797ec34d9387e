"""
Payment Workflow

Transitions driven by people rather than the clock:
- gateway callback: pending -> completed / failed
- admin cash confirmation: cash_pending -> cash_collected (inside the 48h window)
- cancellation by the owner or an admin

Every transition is one conditional UPDATE keyed on the status it starts
from, so two racing callers cannot both win.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, or_, update
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    AlreadyFinalizedError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    SequenceExhaustedError,
    ValidationError,
)
from ..models.reservation import (
    Reservation,
    PaymentMethod,
    PaymentStatus,
    LifecycleStatus,
    PAID_STATUSES,
    CLOSED_LIFECYCLES,
    derive_lifecycle_status,
    cash_deadline,
)
from ..models.seat import Seat
from ..models.user import User
from ..utils.db_helpers import acquire_row_lock, lock_rows_in_order, storage_guard
from ..utils.dependencies import Actor
from ..utils.logging_config import get_logger
from ..utils.time_utils import local_today, utcnow
from .interval_store import find_active_reservation, find_conflicts, get_reservation, occupied_labels
from .notification_service import Notifier, get_notifier
from .reservation_allocator import pick_seat
from .sequence_issuer import MembershipIdentity, SequenceIssuer

logger = get_logger(__name__)


@dataclass
class PaymentOutcome:
    reservation: Reservation
    identity: Optional[MembershipIdentity] = None
    seat_changed: bool = False
    repeated: bool = False


def _append_note(note: str):
    """SQL expression appending ``note`` to admin_note"""
    return case(
        (Reservation.admin_note.is_(None), note),
        else_=Reservation.admin_note + "\n" + note
    )


class PaymentWorkflow:
    """Payment, cash collection and cancellation transitions."""

    def __init__(self, db: Session, notifier: Optional[Notifier] = None, issuer: Optional[SequenceIssuer] = None):
        self.db = db
        self.notifier = notifier or get_notifier()
        self.issuer = issuer or SequenceIssuer(db)

    # ------------------------------------------------------------------
    # Gateway callback
    # ------------------------------------------------------------------

    def record_payment_result(
        self,
        reservation_id: str,
        success: bool,
        method: Optional[str] = None,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
        actor: Optional[Actor] = None
    ) -> PaymentOutcome:
        """
        Apply a payment gateway result to a pending reservation.

        When called on behalf of a caller, only the owner or an admin may
        report the result.

        A repeated success with the same reference returns the recorded
        outcome. On success the seat is checked again: card holds do not
        block a seat, so someone may have paid for it first. In that case
        another free seat in the same scope is assigned, or none.
        """
        now = now or utcnow()
        if method is not None and method not in [m.value for m in PaymentMethod]:
            raise ValidationError(f"Unknown payment method: {method}")

        with storage_guard(self.db, "payment result"):
            outcome = self._apply_payment_result(reservation_id, success, method, payment_reference, now, actor)

        if outcome.reservation.payment_status == PaymentStatus.COMPLETED.value:
            outcome.identity = self._issue_identifier(outcome.reservation.user_id, now)
            if not outcome.repeated:
                self._notify_paid(outcome)
        return outcome

    def _apply_payment_result(
        self,
        reservation_id: str,
        success: bool,
        method: Optional[str],
        payment_reference: Optional[str],
        now: datetime,
        actor: Optional[Actor]
    ) -> PaymentOutcome:
        db = self.db
        reservation = acquire_row_lock(db, Reservation, Reservation.id == reservation_id)
        if reservation is None:
            db.rollback()
            raise NotFoundError(f"Reservation {reservation_id} not found")
        if actor is not None and not (actor.is_admin or actor.user_id == reservation.user_id):
            db.rollback()
            raise PermissionDeniedError("You can only report payment for your own reservations")

        current = reservation.payment_status
        repeated_success = (
            success
            and current == PaymentStatus.COMPLETED.value
            and (payment_reference is None or payment_reference == reservation.payment_reference)
        )
        repeated_failure = not success and current == PaymentStatus.FAILED.value
        if repeated_success or repeated_failure:
            db.commit()
            return PaymentOutcome(reservation=reservation, repeated=True)

        if current != PaymentStatus.PENDING.value:
            db.rollback()
            raise InvalidTransitionError(
                f"Payment cannot be recorded on a {current} reservation",
                current_status=current
            )
        if reservation.lifecycle_status in CLOSED_LIFECYCLES:
            db.rollback()
            raise InvalidTransitionError(
                f"Reservation is {reservation.lifecycle_status}",
                current_status=reservation.lifecycle_status
            )

        if not success:
            self._transition(
                reservation_id,
                PaymentStatus.PENDING.value,
                payment_status=PaymentStatus.FAILED.value,
                lifecycle_status=LifecycleStatus.EXPIRED.value,
                payment_reference=payment_reference,
                updated_at=now,
            )
            db.refresh(reservation)
            db.commit()
            logger.reservation_transition(reservation_id, "payment_status", current, PaymentStatus.FAILED.value)
            return PaymentOutcome(reservation=reservation)

        seat_label = self._revalidate_seat(reservation, now)
        seat_changed = seat_label != reservation.seat_label

        lifecycle = reservation.lifecycle_status
        today = local_today(now)
        if derive_lifecycle_status(
            PaymentStatus.COMPLETED.value, lifecycle, reservation.start_date, reservation.end_date, today
        ) == LifecycleStatus.ACTIVE.value and find_active_reservation(db, reservation.user_id, now) is None:
            lifecycle = LifecycleStatus.ACTIVE.value

        self._transition(
            reservation_id,
            PaymentStatus.PENDING.value,
            payment_status=PaymentStatus.COMPLETED.value,
            payment_method=method or reservation.payment_method,
            payment_reference=payment_reference,
            paid_at=now,
            seat_label=seat_label,
            lifecycle_status=lifecycle,
            updated_at=now,
        )
        if seat_changed and seat_label:
            db.execute(
                update(Seat)
                .where(Seat.label == seat_label)
                .values(total_allocations=Seat.total_allocations + 1)
                .execution_options(synchronize_session=False)
            )
        db.refresh(reservation)
        db.commit()

        logger.reservation_transition(reservation_id, "payment_status", current, PaymentStatus.COMPLETED.value)
        if seat_changed:
            logger.warning(
                f"Reservation {reservation_id} lost seat before payment; "
                f"now {seat_label or 'unassigned'}"
            )
        return PaymentOutcome(reservation=reservation, seat_changed=seat_changed)

    def _revalidate_seat(self, reservation: Reservation, now: datetime) -> Optional[str]:
        """Seat the reservation can keep once paid, or a replacement, or None"""
        db = self.db
        # One ordered lock over the tier (and the held seat), same order as the allocator
        in_scope = Seat.available_for.contains(reservation.resource_type)
        if reservation.seat_label:
            in_scope = or_(in_scope, Seat.label == reservation.seat_label)
        seats = lock_rows_in_order(db, Seat, in_scope, Seat.label)

        if reservation.seat_label and any(s.label == reservation.seat_label for s in seats):
            clash = find_conflicts(
                db, reservation.resource_type, reservation.time_slot,
                reservation.start_date, reservation.end_date,
                seat_label=reservation.seat_label,
                exclude_reservation_id=reservation.id,
                now=now
            )
            if not clash:
                return reservation.seat_label

        occupied = occupied_labels(
            db, reservation.resource_type, reservation.time_slot,
            reservation.start_date, reservation.end_date,
            exclude_reservation_id=reservation.id, now=now
        )
        replacement = pick_seat(seats, occupied, reservation.resource_type)
        return replacement.label if replacement else None

    # ------------------------------------------------------------------
    # Cash collection
    # ------------------------------------------------------------------

    def confirm_cash_collection(
        self,
        reservation_id: str,
        admin: Actor,
        note: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PaymentOutcome:
        """
        Record that an admin collected the cash for a held reservation.

        Raises:
            PermissionDeniedError: caller is not an admin
            NotFoundError: no such reservation
            AlreadyFinalizedError: collected, expired, cancelled or past the window
            InvalidTransitionError: not a cash reservation
        """
        if not admin.is_admin:
            raise PermissionDeniedError("Only admins can confirm cash collection")

        now = now or utcnow()
        window = timedelta(hours=settings.cash_collection_window_hours)
        stamp = f"[{now.strftime('%Y-%m-%d %H:%M')}] Cash collected by {admin.user_id}"
        if note:
            stamp = f"{stamp}: {note}"

        with storage_guard(self.db, "cash confirmation"):
            result = self.db.execute(
                update(Reservation)
                .where(
                    Reservation.id == reservation_id,
                    Reservation.payment_status == PaymentStatus.CASH_PENDING.value,
                    Reservation.lifecycle_status.notin_(CLOSED_LIFECYCLES),
                    Reservation.created_at >= now - window,
                )
                .values(
                    payment_status=PaymentStatus.CASH_COLLECTED.value,
                    cash_confirmed_at=now,
                    cash_confirmed_by_id=admin.user_id,
                    paid_at=now,
                    updated_at=now,
                    admin_note=_append_note(stamp),
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                self.db.rollback()
                raise self._confirmation_refused(reservation_id, now)

            reservation = get_reservation(self.db, reservation_id)
            self._activate_if_due(reservation, now)
            self.db.commit()

        logger.reservation_transition(
            reservation_id, "payment_status",
            PaymentStatus.CASH_PENDING.value, PaymentStatus.CASH_COLLECTED.value
        )

        outcome = PaymentOutcome(reservation=reservation)
        outcome.identity = self._issue_identifier(reservation.user_id, now)
        self._notify_paid(outcome)
        return outcome

    def _confirmation_refused(self, reservation_id: str, now: datetime) -> Exception:
        reservation = get_reservation(self.db, reservation_id)
        self.db.rollback()
        if reservation is None:
            return NotFoundError(f"Reservation {reservation_id} not found")

        status = reservation.payment_status
        if reservation.payment_method != PaymentMethod.CASH.value and status == PaymentStatus.PENDING.value:
            return InvalidTransitionError("Reservation is not a cash payment", current_status=status)
        if reservation.lifecycle_status in CLOSED_LIFECYCLES:
            return AlreadyFinalizedError(
                f"Reservation is already {reservation.lifecycle_status}",
                current_status=reservation.lifecycle_status
            )
        if status == PaymentStatus.CASH_PENDING.value:
            return AlreadyFinalizedError(
                "Cash collection window has closed",
                current_status=PaymentStatus.EXPIRED.value
            )
        return AlreadyFinalizedError(f"Reservation payment is already {status}", current_status=status)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(
        self,
        reservation_id: str,
        actor: Actor,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Cancel a reservation; the seat is released at once.

        Unpaid holds can be cancelled by their owner or an admin (cash holds
        only inside the collection window). Paid, unexpired reservations can
        be cancelled by an admin only; refunds happen outside the engine.
        """
        now = now or utcnow()

        with storage_guard(self.db, "cancellation"):
            reservation = get_reservation(self.db, reservation_id)
            if reservation is None:
                self.db.rollback()
                raise NotFoundError(f"Reservation {reservation_id} not found")

            if not (actor.is_admin or actor.user_id == reservation.user_id):
                self.db.rollback()
                raise PermissionDeniedError("You can only cancel your own reservations")

            condition = self._cancellable_condition(reservation, actor, now)

            stamp = f"[{now.strftime('%Y-%m-%d %H:%M')}] Cancelled by {actor.user_id}"
            if reason:
                stamp = f"{stamp}: {reason}"

            old_lifecycle = reservation.lifecycle_status
            result = self.db.execute(
                update(Reservation)
                .where(
                    Reservation.id == reservation_id,
                    Reservation.lifecycle_status.notin_(CLOSED_LIFECYCLES),
                    condition,
                )
                .values(
                    lifecycle_status=LifecycleStatus.CANCELLED.value,
                    cancelled_at=now,
                    cancelled_by_id=actor.user_id,
                    updated_at=now,
                    admin_note=_append_note(stamp),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise InvalidTransitionError("Reservation changed state; reload and retry")

            self.db.refresh(reservation)
            self.db.commit()

        logger.reservation_transition(
            reservation_id, "lifecycle_status", old_lifecycle, LifecycleStatus.CANCELLED.value
        )
        return reservation

    def _cancellable_condition(self, reservation: Reservation, actor: Actor, now: datetime):
        status = reservation.payment_status
        lifecycle = reservation.lifecycle_status

        if lifecycle in CLOSED_LIFECYCLES:
            self.db.rollback()
            raise InvalidTransitionError(f"Reservation is already {lifecycle}", current_status=lifecycle)

        if status == PaymentStatus.PENDING.value:
            return Reservation.payment_status == status

        if status == PaymentStatus.CASH_PENDING.value:
            deadline = cash_deadline(reservation.created_at, settings.cash_collection_window_hours)
            if now > deadline:
                self.db.rollback()
                raise InvalidTransitionError(
                    "Cash collection window has closed; the hold has expired",
                    current_status=status
                )
            window = timedelta(hours=settings.cash_collection_window_hours)
            return (Reservation.payment_status == status) & (Reservation.created_at >= now - window)

        if status in PAID_STATUSES:
            if not actor.is_admin:
                self.db.rollback()
                raise PermissionDeniedError("Paid reservations can only be cancelled by an admin")
            if local_today(now) > reservation.end_date:
                self.db.rollback()
                raise InvalidTransitionError("Reservation has already ended", current_status=status)
            return Reservation.payment_status == status

        self.db.rollback()
        raise InvalidTransitionError(f"A {status} reservation cannot be cancelled", current_status=status)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, reservation_id: str, from_payment_status: str, **values) -> None:
        result = self.db.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.payment_status == from_payment_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise InvalidTransitionError(
                f"Reservation is no longer {from_payment_status}",
                current_status=from_payment_status
            )

    def _activate_if_due(self, reservation: Reservation, now: datetime) -> None:
        """Activate a just-paid reservation whose range has started, unless another is active"""
        today = local_today(now)
        derived = derive_lifecycle_status(
            reservation.payment_status, reservation.lifecycle_status,
            reservation.start_date, reservation.end_date, today
        )
        if derived != LifecycleStatus.ACTIVE.value or reservation.lifecycle_status == derived:
            return

        other = find_active_reservation(self.db, reservation.user_id, now)
        if other is not None and other.id != reservation.id:
            return

        self.db.execute(
            update(Reservation)
            .where(
                Reservation.id == reservation.id,
                Reservation.lifecycle_status == LifecycleStatus.NOT_YET_ACTIVE.value
            )
            .values(lifecycle_status=LifecycleStatus.ACTIVE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        reservation.lifecycle_status = LifecycleStatus.ACTIVE.value

    def _issue_identifier(self, user_id: str, now: datetime) -> Optional[MembershipIdentity]:
        """Issue (or fetch) the member's identifier; the sweeper backfills on exhaustion"""
        try:
            return self.issuer.issue_identifier(user_id, now=now)
        except SequenceExhaustedError as e:
            logger.error(f"Identifier for {user_id} deferred to next sweep: {e}")
            return None

    def _notify_paid(self, outcome: PaymentOutcome) -> None:
        reservation = outcome.reservation
        user = self.db.query(User).filter(User.id == reservation.user_id).first()
        self.db.commit()
        if user is None:
            return

        message = (
            f"Your {reservation.resource_type} membership ({reservation.time_slot}) "
            f"from {reservation.start_date.isoformat()} to {reservation.end_date.isoformat()} is confirmed"
        )
        if reservation.seat_label:
            message += f", seat {reservation.seat_label}"
        if outcome.identity and outcome.identity.newly_issued:
            message += f". Your membership ID is {outcome.identity.membership_id}"

        self.notifier.notify(user.email, "Membership confirmed", message + ".")
