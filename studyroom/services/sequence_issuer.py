"""
Membership Identifier Issuance

Each member gets one human-facing identifier, ever: ``prefix + YYYYMM +
sequence`` where the sequence restarts at 1 every issuing period.

One attempt is a single transaction:
1. advance the period counter with an upsert that returns the new value
2. write the identifier onto the user only if the user still has none

If step 2 matches no row another caller won the race; rolling back undoes
the counter advance as well, so the sequence never skips a number.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, OperationalError

from ..config import settings
from ..exceptions import NotFoundError, SequenceExhaustedError
from ..models.sequence_counter import SequenceCounter
from ..models.user import User
from ..utils.db_helpers import AtomicCounter, storage_guard
from ..utils.logging_config import get_logger
from ..utils.metrics import membership_ids_issued_total, sequence_retries_total
from ..utils.time_utils import utcnow, period_key

logger = get_logger(__name__)


@dataclass
class MembershipIdentity:
    user_id: str
    membership_id: str
    period_key: str
    sequence: int
    issued_at: Optional[datetime] = None
    newly_issued: bool = False

    @classmethod
    def from_user(cls, user: User, newly_issued: bool = False) -> "MembershipIdentity":
        return cls(
            user_id=user.id,
            membership_id=user.membership_id,
            period_key=user.registration_period,
            sequence=user.registration_number,
            issued_at=user.membership_id_issued_at,
            newly_issued=newly_issued,
        )


def render_identifier(period: str, sequence: int, prefix: Optional[str] = None) -> str:
    """202501 + 7 -> '202501007' (with the configured prefix in front)"""
    if prefix is None:
        prefix = settings.membership_id_prefix
    return f"{prefix}{period}{sequence:03d}"


class SequenceIssuer:
    """
    Issues membership identifiers with bounded retry on storage contention.

    The session is used for whole transactions: callers must not hold
    uncommitted work on it when calling ``issue_identifier``.
    """

    def __init__(
        self,
        db: Session,
        max_attempts: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        prefix: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.db = db
        self.max_attempts = max_attempts or settings.sequence_max_attempts
        self.retry_delay_ms = settings.sequence_retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        self.prefix = prefix
        self._sleep = sleep

    def issue_identifier(self, user_id: str, now: Optional[datetime] = None) -> MembershipIdentity:
        """
        Return the user's identifier, issuing one if they have none.

        Raises:
            NotFoundError: unknown user
            SequenceExhaustedError: contention outlasted every attempt; retry later
            StorageUnavailableError: database unreachable
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                with storage_guard(self.db, "identifier issuance"):
                    return self._attempt(user_id, now or utcnow(), attempt)
            except (OperationalError, IntegrityError) as e:
                self.db.rollback()
                last_error = e
                sequence_retries_total.inc(reason=type(e).__name__)
                logger.warning(
                    f"Identifier issuance for {user_id} hit contention "
                    f"(attempt {attempt}/{self.max_attempts}): {e.__class__.__name__}"
                )
                if attempt < self.max_attempts and self.retry_delay_ms:
                    self._sleep(self.retry_delay_ms * attempt / 1000.0)

        logger.error(f"Identifier issuance for {user_id} exhausted {self.max_attempts} attempts: {last_error}")
        raise SequenceExhaustedError(
            f"Could not issue a membership ID after {self.max_attempts} attempts; retry later"
        )

    def _attempt(self, user_id: str, now: datetime, attempt: int) -> MembershipIdentity:
        user = self.db.query(User).populate_existing().filter(User.id == user_id).first()
        if user is None:
            self.db.rollback()
            raise NotFoundError(f"User {user_id} not found")

        if user.has_membership_id:
            identity = MembershipIdentity.from_user(user)
            self.db.commit()
            return identity

        period = period_key(now)
        sequence = AtomicCounter.upsert_increment(
            self.db,
            SequenceCounter,
            "period_key",
            period,
            "value",
            extra_values={"updated_at": now}
        )
        membership_id = render_identifier(period, sequence, self.prefix)

        result = self.db.execute(
            update(User)
            .where(User.id == user_id, User.has_membership_id == False)  # noqa: E712
            .values(
                has_membership_id=True,
                membership_id=membership_id,
                registration_period=period,
                registration_number=sequence,
                membership_id_issued_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            # Lost the race; the winner's identifier is the answer
            self.db.rollback()
            winner = self.db.query(User).filter(User.id == user_id).first()
            identity = MembershipIdentity.from_user(winner)
            self.db.commit()
            logger.info(f"Identifier for {user_id} already issued concurrently: {identity.membership_id}")
            return identity

        self.db.commit()
        membership_ids_issued_total.inc()
        logger.identifier_issued(user_id, membership_id, attempt)

        return MembershipIdentity(
            user_id=user_id,
            membership_id=membership_id,
            period_key=period,
            sequence=sequence,
            issued_at=now,
            newly_issued=True,
        )


def issue_identifier(db: Session, user_id: str, now: Optional[datetime] = None) -> MembershipIdentity:
    """Convenience wrapper using configured retry settings"""
    return SequenceIssuer(db).issue_identifier(user_id, now=now)
