import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, Integer, DateTime, Index
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class UserRole(str, enum.Enum):
    MEMBER = "member"
    ADMIN = "admin"


class User(Base):
    """
    Member account, reduced to what the reservation engine reads and writes.

    The membership identifier columns are written once, by the sequence issuer,
    through a compare-and-set on ``has_membership_id``.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(150), nullable=False, default="")
    role = Column(String(20), default=UserRole.MEMBER.value, nullable=False)

    # Registration state
    is_email_verified = Column(Boolean, default=False, nullable=False)
    is_draft = Column(Boolean, default=False, nullable=False, index=True)

    # Membership identity
    has_membership_id = Column(Boolean, default=False, nullable=False)
    membership_id = Column(String(32), nullable=True, unique=True)
    registration_period = Column(String(6), nullable=True)
    registration_number = Column(Integer, nullable=True)
    membership_id_issued_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservations = relationship("Reservation", back_populates="user", foreign_keys="Reservation.user_id")

    __table_args__ = (
        Index("ix_user_registration_period_number", "registration_period", "registration_number", unique=True),
        Index("ix_user_draft_created", "is_draft", "created_at"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def __repr__(self):
        return f"<User {self.email} {self.membership_id or '-'}>"
