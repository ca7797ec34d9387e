"""
Lifecycle Sweeper

Periodic pass that moves reservations along as the calendar advances:
- paid, not yet active, range has started        -> active
- paid, range has ended                          -> expired
- cash hold older than the collection window     -> payment expired
- registration drafts past their grace window    -> deleted
- paid members still missing an identifier       -> identifier issued

Every write is ``UPDATE ... WHERE id IN (batch) AND <status condition>``,
so rows already moved by another pass are left alone and a second pass in a
row finds nothing to do. Each batch commits on its own; a failed batch is
rolled back, counted and skipped, and the pass carries on.
"""

import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import and_, or_, exists, delete, update, func, text
from sqlalchemy.orm import Session, aliased
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..exceptions import SequenceExhaustedError, StorageUnavailableError
from ..models.reservation import (
    Reservation,
    PaymentStatus,
    LifecycleStatus,
    PAID_STATUSES,
    CLOSED_LIFECYCLES,
)
from ..models.user import User, UserRole
from ..utils.db_helpers import get_pending_with_skip_locked, is_connection_failure, storage_guard
from ..utils.logging_config import get_logger
from ..utils.metrics import (
    record_sweeper_transitions,
    sweeper_batch_errors_total,
    sweeper_last_run_timestamp,
)
from ..utils.time_utils import local_today, utcnow
from .interval_store import cash_hold_cutoff
from .sequence_issuer import SequenceIssuer

logger = get_logger(__name__)


@dataclass
class SweepResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    activated: int = 0
    expired: int = 0
    cash_expired: int = 0
    drafts_purged: int = 0
    identifiers_issued: int = 0
    batch_errors: int = 0
    skipped: bool = False
    skip_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return (
            self.activated + self.expired + self.cash_expired
            + self.drafts_purged + self.identifiers_issued
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["total_changes"] = self.total_changes
        return data


class LifecycleSweeper:
    """
    One sweep pass over reservations and registration drafts.

    Usage:
        result = LifecycleSweeper(db).run_pass()
    """

    def __init__(self, db: Session, batch_size: Optional[int] = None, issuer: Optional[SequenceIssuer] = None):
        self.db = db
        self.batch_size = batch_size or settings.sweeper_batch_size
        self.issuer = issuer or SequenceIssuer(db)

    def run_pass(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult(started_at=now)
        today = local_today(now)

        try:
            self._check_storage()

            result.cash_expired = self.expire_cash_holds(now, result)
            result.expired = self.expire_finished(now, today, result)
            result.activated = self.activate_started(now, today, result)
            result.drafts_purged = self.purge_registration_drafts(now, result)
            result.identifiers_issued = self.backfill_identifiers(now, result)
        except StorageUnavailableError as e:
            result.skipped = True
            result.skip_reason = str(e)
            logger.warning(f"Sweep pass skipped: {e}")

        result.finished_at = utcnow()
        sweeper_last_run_timestamp.set(time.time())

        if result.total_changes or result.batch_errors:
            logger.info(
                f"Sweep pass: {result.activated} activated, {result.expired} expired, "
                f"{result.cash_expired} cash holds expired, {result.drafts_purged} drafts purged, "
                f"{result.identifiers_issued} IDs issued, {result.batch_errors} batch errors"
            )
        return result

    def _check_storage(self) -> None:
        with storage_guard(self.db, "sweep"):
            self.db.execute(text("SELECT 1"))
            self.db.commit()

    # ------------------------------------------------------------------
    # Reservation transitions
    # ------------------------------------------------------------------

    def expire_cash_holds(self, now: datetime, result: SweepResult) -> int:
        """Cash holds nobody confirmed in time stop holding their seat"""
        condition = and_(
            Reservation.payment_status == PaymentStatus.CASH_PENDING.value,
            Reservation.lifecycle_status == LifecycleStatus.NOT_YET_ACTIVE.value,
            Reservation.created_at < cash_hold_cutoff(now),
        )
        return self._sweep(
            "cash_expired", Reservation, condition, result,
            values={
                "payment_status": PaymentStatus.EXPIRED.value,
                "lifecycle_status": LifecycleStatus.EXPIRED.value,
                "updated_at": now,
            }
        )

    def expire_finished(self, now: datetime, today, result: SweepResult) -> int:
        """Paid reservations whose last day has passed, active or never activated"""
        condition = and_(
            Reservation.payment_status.in_(PAID_STATUSES),
            Reservation.lifecycle_status.in_([
                LifecycleStatus.ACTIVE.value,
                LifecycleStatus.NOT_YET_ACTIVE.value,
            ]),
            Reservation.end_date < today,
        )
        return self._sweep(
            "expired", Reservation, condition, result,
            values={"lifecycle_status": LifecycleStatus.EXPIRED.value, "updated_at": now}
        )

    def activate_started(self, now: datetime, today, result: SweepResult) -> int:
        """
        Paid reservations whose range has started become active.

        A member with an active reservation keeps it; a second one waits
        until the first has expired.
        """
        other = aliased(Reservation)
        member_already_active = exists().where(
            other.user_id == Reservation.user_id,
            other.id != Reservation.id,
            other.lifecycle_status == LifecycleStatus.ACTIVE.value,
        )
        condition = and_(
            Reservation.payment_status.in_(PAID_STATUSES),
            Reservation.lifecycle_status == LifecycleStatus.NOT_YET_ACTIVE.value,
            Reservation.start_date <= today,
            Reservation.end_date >= today,
            ~member_already_active,
        )
        return self._sweep(
            "activated", Reservation, condition, result,
            values={"lifecycle_status": LifecycleStatus.ACTIVE.value, "updated_at": now},
            select=_one_per_member
        )

    # ------------------------------------------------------------------
    # Registration drafts
    # ------------------------------------------------------------------

    def purge_registration_drafts(self, now: datetime, result: SweepResult) -> int:
        """
        Delete abandoned sign-ups.

        Unverified drafts go after a short grace window; verified members
        who never paid (no identifier, no reservation) after a longer one.
        Admin accounts are never touched.
        """
        unverified_cutoff = now - timedelta(minutes=settings.draft_unverified_grace_minutes)
        incomplete_cutoff = now - timedelta(days=settings.draft_incomplete_grace_days)

        has_reservations = exists().where(Reservation.user_id == User.id)
        condition = and_(
            User.role == UserRole.MEMBER.value,
            User.has_membership_id == False,  # noqa: E712
            ~has_reservations,
            or_(
                and_(
                    User.is_draft == True,  # noqa: E712
                    User.is_email_verified == False,  # noqa: E712
                    User.created_at < unverified_cutoff,
                ),
                User.created_at < incomplete_cutoff,
            ),
        )
        return self._sweep("drafts_purged", User, condition, result, delete_rows=True)

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def backfill_identifiers(self, now: datetime, result: SweepResult) -> int:
        """Issue identifiers that a payment path had to defer"""
        paid = exists().where(
            Reservation.user_id == User.id,
            Reservation.payment_status.in_(PAID_STATUSES),
        )
        with storage_guard(self.db, "identifier backfill"):
            user_ids = [
                row[0] for row in
                self.db.query(User.id)
                .filter(User.has_membership_id == False, paid)  # noqa: E712
                .order_by(User.created_at)
                .limit(self.batch_size)
                .all()
            ]
            self.db.commit()

        issued = 0
        for user_id in user_ids:
            try:
                identity = self.issuer.issue_identifier(user_id, now=now)
                if identity.newly_issued:
                    issued += 1
            except SequenceExhaustedError as e:
                result.batch_errors += 1
                result.errors.append(f"identifier {user_id}: {e}")
                sweeper_batch_errors_total.inc(transition="identifiers_issued")
                logger.error(f"Identifier backfill for {user_id} failed: {e}")

        record_sweeper_transitions("identifiers_issued", issued)
        return issued

    # ------------------------------------------------------------------
    # Batch machinery
    # ------------------------------------------------------------------

    def _sweep(
        self,
        transition: str,
        model,
        condition,
        result: SweepResult,
        values: Optional[dict] = None,
        delete_rows: bool = False,
        select: Optional[Callable[[list], list]] = None
    ) -> int:
        """
        Apply one transition to every row matching ``condition``, a batch at a time.

        Rows from a failed batch, and rows ``select`` passes over, are not
        fetched again in this pass.
        """
        changed = 0
        excluded: Set[str] = set()

        while True:
            batch_condition = condition
            if excluded:
                batch_condition = and_(condition, model.id.notin_(excluded))

            try:
                rows = get_pending_with_skip_locked(
                    self.db, model, batch_condition, order_by=model.id, limit=self.batch_size
                )
            except SQLAlchemyError as e:
                self._batch_failed(transition, e, result)
                break
            if not rows:
                self.db.commit()
                break

            chosen = select(rows) if select else rows
            ids = [row.id for row in chosen]
            excluded.update(row.id for row in rows if row.id not in ids)

            try:
                if delete_rows:
                    stmt = delete(model).where(model.id.in_(ids), condition)
                else:
                    stmt = update(model).where(model.id.in_(ids), condition).values(**values)
                outcome = self.db.execute(stmt.execution_options(synchronize_session=False))
                self.db.commit()
                changed += outcome.rowcount or 0
            except SQLAlchemyError as e:
                excluded.update(ids)
                self._batch_failed(transition, e, result, rows=len(ids))

            if len(rows) < self.batch_size:
                break

        record_sweeper_transitions(transition, changed)
        return changed

    def _batch_failed(self, transition: str, error: Exception, result: SweepResult, rows: int = 0) -> None:
        self.db.rollback()
        if is_connection_failure(error):
            raise StorageUnavailableError(f"Storage unavailable during sweep {transition}") from error
        result.batch_errors += 1
        result.errors.append(f"{transition}: {error.__class__.__name__}")
        sweeper_batch_errors_total.inc(transition=transition)
        logger.error(f"Sweep batch for {transition} failed ({rows} rows): {error}")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def expiry_report(self, now: Optional[datetime] = None) -> Dict:
        """Counts for the operations dashboard, plus who is expiring this week"""
        now = now or utcnow()
        today = local_today(now)
        week_ahead = today + timedelta(days=7)

        open_paid = and_(
            Reservation.payment_status.in_(PAID_STATUSES),
            Reservation.lifecycle_status.notin_(CLOSED_LIFECYCLES),
        )

        def count(*conditions) -> int:
            return self.db.query(func.count(Reservation.id)).filter(*conditions).scalar() or 0

        report = {
            "date": today.isoformat(),
            "active": count(open_paid, Reservation.start_date <= today, Reservation.end_date >= today),
            "expiring_today": count(open_paid, Reservation.end_date == today),
            "expiring_within_7_days": count(
                open_paid, Reservation.end_date > today, Reservation.end_date <= week_ahead
            ),
            "stale_active": count(
                Reservation.lifecycle_status == LifecycleStatus.ACTIVE.value,
                Reservation.end_date < today,
            ),
            "cash_pending": count(
                Reservation.payment_status == PaymentStatus.CASH_PENDING.value,
                Reservation.lifecycle_status.notin_(CLOSED_LIFECYCLES),
                Reservation.created_at >= cash_hold_cutoff(now),
            ),
            "cash_overdue": count(
                Reservation.payment_status == PaymentStatus.CASH_PENDING.value,
                Reservation.lifecycle_status.notin_(CLOSED_LIFECYCLES),
                Reservation.created_at < cash_hold_cutoff(now),
            ),
        }
        report["expiring_soon"] = self._expiring_soon(open_paid, today, week_ahead)
        self.db.commit()
        return report

    def _expiring_soon(self, open_paid, today, week_ahead) -> List[Dict]:
        """Paid members whose range ends within the week, soonest first"""
        rows = (
            self.db.query(Reservation, User.full_name)
            .outerjoin(User, User.id == Reservation.user_id)
            .filter(open_paid, Reservation.end_date >= today, Reservation.end_date <= week_ahead)
            .order_by(Reservation.end_date, Reservation.seat_label)
            .all()
        )
        expiring = []
        for reservation, full_name in rows:
            days_left = (reservation.end_date - today).days
            expiring.append({
                "reservation_id": reservation.id,
                "user_id": reservation.user_id,
                "full_name": full_name,
                "seat_label": reservation.seat_label,
                "end_date": reservation.end_date.isoformat(),
                "days_left": days_left,
                "is_expiring_soon": days_left <= 3,
                "is_expiring_today": days_left == 0,
            })
        return expiring


def _one_per_member(rows: List[Reservation]) -> List[Reservation]:
    """Earliest-starting reservation per member"""
    chosen: Dict[str, Reservation] = {}
    for row in sorted(rows, key=lambda r: (r.start_date, r.created_at or datetime.min)):
        chosen.setdefault(row.user_id, row)
    return list(chosen.values())
