# Services package
from .interval_store import (
    OccupiedSeat,
    occupying_condition,
    find_conflicts,
    get_occupancy,
    get_reservation,
    find_active_reservation,
)
from .sequence_issuer import MembershipIdentity, SequenceIssuer, issue_identifier, render_identifier
from .reservation_allocator import ReservationAllocator, allocate, pick_seat
from .payment_workflow import PaymentWorkflow, PaymentOutcome
from .lifecycle_sweeper import LifecycleSweeper, SweepResult
from .notification_service import Notifier, LoggingNotifier, WebhookNotifier, get_notifier
from .seat_inventory import initialize_default_seats, get_seat_layout

__all__ = [
    "OccupiedSeat", "occupying_condition", "find_conflicts", "get_occupancy",
    "get_reservation", "find_active_reservation",
    "MembershipIdentity", "SequenceIssuer", "issue_identifier", "render_identifier",
    "ReservationAllocator", "allocate", "pick_seat",
    "PaymentWorkflow", "PaymentOutcome",
    "LifecycleSweeper", "SweepResult",
    "Notifier", "LoggingNotifier", "WebhookNotifier", "get_notifier",
    "initialize_default_seats", "get_seat_layout",
]
