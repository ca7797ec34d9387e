# Models package
from .user import User, UserRole
from .seat import Seat, SeatType, SEAT_TYPE_PRIORITY
from .reservation import (
    Reservation,
    PaymentStatus,
    PaymentMethod,
    LifecycleStatus,
    TimeSlot,
    DurationCode,
    PAID_STATUSES,
    CLOSED_LIFECYCLES,
    derive_lifecycle_status,
)
from .sequence_counter import SequenceCounter

__all__ = [
    "User", "UserRole",
    "Seat", "SeatType", "SEAT_TYPE_PRIORITY",
    "Reservation", "PaymentStatus", "PaymentMethod", "LifecycleStatus",
    "TimeSlot", "DurationCode", "PAID_STATUSES", "CLOSED_LIFECYCLES",
    "derive_lifecycle_status",
    "SequenceCounter",
]
