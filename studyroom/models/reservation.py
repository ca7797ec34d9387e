import uuid
from datetime import datetime, date, timedelta
from typing import Optional
from sqlalchemy import Column, String, Date, Numeric, Text, ForeignKey, DateTime, Index
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CASH_PENDING = "cash_pending"
    CASH_COLLECTED = "cash_collected"
    FAILED = "failed"
    EXPIRED = "expired"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    UPI = "upi"
    CASH = "cash"


class LifecycleStatus(str, enum.Enum):
    NOT_YET_ACTIVE = "not_yet_active"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TimeSlot(str, enum.Enum):
    """Recurring daily windows"""
    DAY = "Day"            # 07:00 - 22:00
    NIGHT = "Night"        # 22:00 - 07:00
    FULL_DAY = "24 Hours"


class DurationCode(str, enum.Enum):
    ONE_DAY = "1 Day"
    EIGHT_DAYS = "8 Days"
    FIFTEEN_DAYS = "15 Days"
    ONE_MONTH = "1 Month"
    TWO_MONTHS = "2 Months"
    THREE_MONTHS = "3 Months"
    FOUR_MONTHS = "4 Months"
    FIVE_MONTHS = "5 Months"
    SIX_MONTHS = "6 Months"
    SEVEN_MONTHS = "7 Months"
    EIGHT_MONTHS = "8 Months"
    NINE_MONTHS = "9 Months"
    TEN_MONTHS = "10 Months"
    ELEVEN_MONTHS = "11 Months"
    TWELVE_MONTHS = "12 Months"


# Payment states that mean the member has paid
PAID_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.CASH_COLLECTED.value)

# Lifecycle states that no longer hold anything
CLOSED_LIFECYCLES = (LifecycleStatus.EXPIRED.value, LifecycleStatus.CANCELLED.value)


class Reservation(Base):
    """
    One seat subscription for a (tier, time slot, inclusive date range).

    Rows are only ever status-transitioned; nothing in the engine deletes them.
    """
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    resource_type = Column(String(50), nullable=False)
    time_slot = Column(String(20), nullable=False)
    duration_code = Column(String(20), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)  # inclusive

    # Unassigned is a valid transient state
    seat_label = Column(String(10), nullable=True)

    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    payment_method = Column(String(20), default=PaymentMethod.UPI.value, nullable=False)
    payment_reference = Column(String(255), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    lifecycle_status = Column(String(20), default=LifecycleStatus.NOT_YET_ACTIVE.value, nullable=False)

    amount = Column(Numeric(10, 2), default=0)
    admin_note = Column(Text, nullable=True)

    # Cash collection
    cash_confirmed_at = Column(DateTime, nullable=True)
    cash_confirmed_by_id = Column(String(36), nullable=True)  # actor id from the auth gateway

    # Cancellation
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="reservations", foreign_keys=[user_id])

    __table_args__ = (
        Index("ix_reservation_scope_dates", "resource_type", "time_slot", "start_date", "end_date"),
        Index("ix_reservation_seat_scope", "resource_type", "seat_label", "time_slot"),
        Index("ix_reservation_payment_created", "payment_status", "created_at"),
        Index("ix_reservation_lifecycle", "lifecycle_status", "end_date"),
    )

    def __repr__(self):
        return (
            f"<Reservation {self.id[:8]} {self.seat_label or '-'} "
            f"{self.start_date}..{self.end_date} {self.payment_status}/{self.lifecycle_status}>"
        )


def derive_lifecycle_status(
    payment_status: str,
    stored_lifecycle: Optional[str],
    start_date: date,
    end_date: date,
    today: date
) -> str:
    """
    Lifecycle implied by payment status, date range and today's date.

    Cancelled and expired are terminal and win over the dates. Unpaid
    reservations never become active on their own.
    """
    if stored_lifecycle in CLOSED_LIFECYCLES:
        return stored_lifecycle
    if payment_status in (PaymentStatus.FAILED.value, PaymentStatus.EXPIRED.value):
        return LifecycleStatus.EXPIRED.value
    if payment_status not in PAID_STATUSES:
        return LifecycleStatus.NOT_YET_ACTIVE.value
    if today < start_date:
        return LifecycleStatus.NOT_YET_ACTIVE.value
    if today > end_date:
        return LifecycleStatus.EXPIRED.value
    return LifecycleStatus.ACTIVE.value


def cash_deadline(created_at: datetime, window_hours: int) -> datetime:
    """Moment a cash hold stops counting"""
    return created_at + timedelta(hours=window_hours)
