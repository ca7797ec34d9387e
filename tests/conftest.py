"""
Shared fixtures: a throwaway SQLite file per test, plus seeders.

A file (not :memory:) so threads in the concurrency tests each get their
own connection to the same database.
"""

import os
import sys
import uuid
from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from studyroom.database import Base, build_engine
from studyroom import models  # noqa: F401
from studyroom.models.seat import Seat, SeatType
from studyroom.models.user import User, UserRole

# 12:00 on Jan 5 2025 in Asia/Kolkata
NOW = datetime(2025, 1, 5, 6, 30)

ALL_TIERS = "Standard,Premium,Garden"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'studyroom_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    """Create and commit a member (or admin)"""
    def _make_user(email=None, role=UserRole.MEMBER.value, **fields):
        user = User(
            id=fields.pop("id", str(uuid.uuid4())),
            email=email or f"{uuid.uuid4().hex[:10]}@example.com",
            full_name=fields.pop("full_name", "Test Member"),
            role=role,
            **fields
        )
        db.add(user)
        db.commit()
        return user
    return _make_user


@pytest.fixture
def make_seat(db):
    """Create and commit a seat; label like B3 -> row B, column 3"""
    def _make_seat(label, seat_type=SeatType.REGULAR.value, tiers=ALL_TIERS, **fields):
        seat = Seat(
            label=label,
            row=label[0],
            column=int(label[1:]),
            seat_type=seat_type,
            available_for=tiers,
            is_active=fields.pop("is_active", True),
            is_maintenance=fields.pop("is_maintenance", False),
            total_allocations=0,
            **fields
        )
        db.add(seat)
        db.commit()
        return seat
    return _make_seat
