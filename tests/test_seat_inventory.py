"""
Tests for the seat inventory and room layout
"""

from datetime import date, datetime

import pytest

from studyroom.exceptions import PermissionDeniedError, ValidationError
from studyroom.models.seat import Seat, SeatType
from studyroom.services.reservation_allocator import ReservationAllocator
from studyroom.services.seat_inventory import (
    default_layout,
    get_seat_layout,
    initialize_default_seats,
    seat_type_for,
)
from studyroom.utils.dependencies import Actor

NOW = datetime(2025, 1, 5, 6, 30)

ADMIN = Actor("admin-1", "admin")


class TestDefaultLayout:

    def test_forty_seats_in_five_rows(self):
        seats = default_layout(["Standard"])

        assert len(seats) == 40
        assert seats[0].label == "A01"
        assert seats[-1].label == "E08"
        assert {s.row for s in seats} == {"A", "B", "C", "D", "E"}
        assert all(s.available_for == "Standard" for s in seats)

    @pytest.mark.parametrize("row_index,column,expected", [
        (0, 1, SeatType.PREMIUM.value),
        (0, 2, SeatType.PREMIUM.value),
        (0, 8, SeatType.CORNER.value),
        (2, 1, SeatType.WINDOW.value),
        (2, 4, SeatType.REGULAR.value),
        (4, 8, SeatType.CORNER.value),
    ])
    def test_seat_type_by_position(self, row_index, column, expected):
        assert seat_type_for(row_index, column) == expected


class TestInitialize:

    def test_only_admins(self, db):
        with pytest.raises(PermissionDeniedError):
            initialize_default_seats(db, Actor("u1", "member"))

    def test_runs_once(self, db):
        assert initialize_default_seats(db, ADMIN) == 40
        assert initialize_default_seats(db, ADMIN) == 0
        assert db.query(Seat).count() == 40
        db.commit()


class TestLayout:

    def test_unscoped_layout_has_no_availability(self, db, make_seat):
        make_seat("A1")
        make_seat("B1")

        layout = get_seat_layout(db)

        assert [r["row"] for r in layout["rows"]] == ["A", "B"]
        assert layout["stats"]["total"] == 2
        assert layout["stats"]["available"] is None

    def test_scoped_layout_marks_held_seats(self, db, make_user, make_seat):
        make_seat("A1")
        make_seat("A2")
        make_seat("A3", is_maintenance=True)
        user = make_user(full_name="Asha Rao")
        ReservationAllocator(db).allocate(
            user_id=user.id,
            resource_type="Standard",
            time_slot="Day",
            date_range=(date(2025, 1, 10), date(2025, 2, 9)),
            duration_code="1 Month",
            payment_method="cash",
            preferred_seat="A2",
            now=NOW,
        )

        layout = get_seat_layout(db, "Standard", "Day", date(2025, 1, 20), date(2025, 1, 20), now=NOW)

        seats = {s["label"]: s for s in layout["rows"][0]["seats"]}
        assert seats["A2"]["is_occupied"] is True
        assert seats["A2"]["occupied_by"] == "Asha Rao"
        assert seats["A2"]["occupied_until"] == "2025-02-09"
        assert seats["A1"]["is_occupied"] is False
        assert layout["stats"] == {"total": 3, "occupied": 1, "maintenance": 1, "available": 1}

    def test_layout_filters_by_tier(self, db, make_seat):
        make_seat("A1", tiers="Standard")
        make_seat("A2", tiers="Premium")

        layout = get_seat_layout(db, resource_type="Premium")

        assert [s["label"] for s in layout["rows"][0]["seats"]] == ["A2"]

    def test_unknown_tier(self, db):
        with pytest.raises(ValidationError):
            get_seat_layout(db, resource_type="Platinum")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
