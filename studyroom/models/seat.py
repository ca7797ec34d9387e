import uuid
from datetime import datetime
from typing import List
from sqlalchemy import Column, String, Boolean, Integer, DateTime, Text, Index
from ..database import Base
import enum


class SeatType(str, enum.Enum):
    REGULAR = "Regular"
    PREMIUM = "Premium"
    WINDOW = "Window"
    CORNER = "Corner"
    ACCESSIBLE = "Accessible"


# Auto-pick order: Regular first, then the premium tiers
SEAT_TYPE_PRIORITY = {
    SeatType.REGULAR.value: 1,
    SeatType.PREMIUM.value: 2,
    SeatType.WINDOW.value: 3,
    SeatType.CORNER.value: 4,
    SeatType.ACCESSIBLE.value: 5,
}


class Seat(Base):
    """
    A bookable desk in the study room.

    Occupancy is never stored here; it is always derived from reservations.
    """
    __tablename__ = "seats"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    label = Column(String(10), nullable=False, unique=True, index=True)  # e.g. A01
    row = Column(String(5), nullable=False)
    column = Column(Integer, nullable=False)
    seat_type = Column(String(20), default=SeatType.REGULAR.value, nullable=False)

    # Membership tiers this seat can be booked under (comma-separated)
    available_for = Column(Text, nullable=False, default="")

    is_active = Column(Boolean, default=True, nullable=False)
    is_maintenance = Column(Boolean, default=False, nullable=False)
    maintenance_notes = Column(Text, nullable=True)

    # Usage statistics
    total_allocations = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_seat_row_column", "row", "column"),
        Index("ix_seat_type_active", "seat_type", "is_active"),
    )

    @property
    def tiers(self) -> List[str]:
        return [t.strip() for t in (self.available_for or "").split(",") if t.strip()]

    def supports(self, resource_type: str) -> bool:
        return resource_type in self.tiers

    @property
    def is_bookable(self) -> bool:
        return bool(self.is_active) and not self.is_maintenance

    @property
    def priority(self) -> int:
        return SEAT_TYPE_PRIORITY.get(self.seat_type, len(SEAT_TYPE_PRIORITY) + 1)

    def __repr__(self):
        return f"<Seat {self.label} ({self.seat_type})>"
