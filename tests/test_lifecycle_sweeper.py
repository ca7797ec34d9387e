"""
Tests for the lifecycle sweeper

Test Coverage:
1. Activation on the start day and expiry after the last day
2. A member never ends up with two active reservations
3. A second pass right after the first changes nothing
4. Registration drafts are purged after their grace windows
5. A failing batch is counted and skipped; a lost database skips the pass
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from studyroom.exceptions import StorageUnavailableError
from studyroom.models.reservation import Reservation, PaymentStatus, LifecycleStatus
from studyroom.models.user import User, UserRole
from studyroom.services.lifecycle_sweeper import LifecycleSweeper, SweepResult
from studyroom.services.sweeper_scheduler import run_sweep, get_sweeper_status

NOW = datetime(2025, 1, 10, 6, 30)  # noon Jan 10 in Asia/Kolkata


@pytest.fixture
def add_reservation(db):
    """Insert a reservation row directly, in whatever state the test needs"""
    def _add(user_id, start, end, payment_status=PaymentStatus.COMPLETED.value,
             lifecycle_status=LifecycleStatus.NOT_YET_ACTIVE.value, seat_label="A1",
             created_at=NOW - timedelta(days=3), payment_method="upi"):
        reservation = Reservation(
            user_id=user_id,
            resource_type="Standard",
            time_slot="Day",
            duration_code="1 Month",
            start_date=start,
            end_date=end,
            seat_label=seat_label,
            payment_status=payment_status,
            payment_method=payment_method,
            lifecycle_status=lifecycle_status,
            amount=Decimal("800"),
            created_at=created_at,
        )
        db.add(reservation)
        db.commit()
        return reservation
    return _add


def statuses(db):
    rows = {r.id: (r.payment_status, r.lifecycle_status) for r in db.query(Reservation).populate_existing().all()}
    db.commit()
    return rows


class TestTransitions:
    """Calendar-driven lifecycle moves"""

    def test_paid_reservation_activates_on_start_day(self, db, make_user, add_reservation):
        starting = add_reservation(make_user().id, date(2025, 1, 10), date(2025, 2, 9))
        future = add_reservation(make_user().id, date(2025, 1, 11), date(2025, 2, 10), seat_label="A2")

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.activated == 1
        rows = statuses(db)
        assert rows[starting.id][1] == LifecycleStatus.ACTIVE.value
        assert rows[future.id][1] == LifecycleStatus.NOT_YET_ACTIVE.value

    def test_unpaid_reservation_never_activates(self, db, make_user, add_reservation):
        pending = add_reservation(make_user().id, date(2025, 1, 10), date(2025, 2, 9),
                                  payment_status=PaymentStatus.PENDING.value)

        LifecycleSweeper(db).run_pass(now=NOW)

        assert statuses(db)[pending.id] == (PaymentStatus.PENDING.value, LifecycleStatus.NOT_YET_ACTIVE.value)

    def test_finished_reservations_expire(self, db, make_user, add_reservation):
        active = add_reservation(make_user().id, date(2024, 12, 10), date(2025, 1, 9),
                                 lifecycle_status=LifecycleStatus.ACTIVE.value)
        never_activated = add_reservation(make_user().id, date(2024, 12, 1), date(2024, 12, 1), seat_label="A2")
        last_day = add_reservation(make_user().id, date(2024, 12, 11), date(2025, 1, 10),
                                   lifecycle_status=LifecycleStatus.ACTIVE.value, seat_label="A3")

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.expired == 2
        rows = statuses(db)
        assert rows[active.id][1] == LifecycleStatus.EXPIRED.value
        assert rows[never_activated.id][1] == LifecycleStatus.EXPIRED.value
        assert rows[last_day.id][1] == LifecycleStatus.ACTIVE.value

    def test_cash_hold_expires_after_window(self, db, make_user, add_reservation):
        lapsed = add_reservation(make_user().id, date(2025, 1, 12), date(2025, 2, 11),
                                 payment_status=PaymentStatus.CASH_PENDING.value, payment_method="cash",
                                 created_at=NOW - timedelta(hours=49))
        fresh = add_reservation(make_user().id, date(2025, 1, 12), date(2025, 2, 11),
                                payment_status=PaymentStatus.CASH_PENDING.value, payment_method="cash",
                                created_at=NOW - timedelta(hours=47), seat_label="A2")

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.cash_expired == 1
        rows = statuses(db)
        assert rows[lapsed.id] == (PaymentStatus.EXPIRED.value, LifecycleStatus.EXPIRED.value)
        assert rows[fresh.id] == (PaymentStatus.CASH_PENDING.value, LifecycleStatus.NOT_YET_ACTIVE.value)

    def test_cancelled_reservations_are_left_alone(self, db, make_user, add_reservation):
        cancelled = add_reservation(make_user().id, date(2024, 12, 1), date(2024, 12, 31),
                                    lifecycle_status=LifecycleStatus.CANCELLED.value)

        LifecycleSweeper(db).run_pass(now=NOW)

        assert statuses(db)[cancelled.id][1] == LifecycleStatus.CANCELLED.value

    def test_small_batches_cover_every_row(self, db, make_user, add_reservation):
        for i in range(5):
            add_reservation(make_user().id, date(2025, 1, 12), date(2025, 2, 11),
                            payment_status=PaymentStatus.CASH_PENDING.value, payment_method="cash",
                            created_at=NOW - timedelta(days=3), seat_label=f"A{i + 1}")

        result = LifecycleSweeper(db, batch_size=2).run_pass(now=NOW)

        assert result.cash_expired == 5


class TestOneActivePerMember:
    """Activation respects the one-active-membership rule"""

    def test_two_started_reservations_activate_only_one(self, db, make_user, add_reservation):
        member = make_user().id
        earlier = add_reservation(member, date(2025, 1, 8), date(2025, 1, 15))
        later = add_reservation(member, date(2025, 1, 9), date(2025, 1, 16), seat_label="A2")

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.activated == 1
        rows = statuses(db)
        assert rows[earlier.id][1] == LifecycleStatus.ACTIVE.value
        assert rows[later.id][1] == LifecycleStatus.NOT_YET_ACTIVE.value

    def test_member_with_an_active_reservation_keeps_it(self, db, make_user, add_reservation):
        member = make_user().id
        add_reservation(member, date(2025, 1, 1), date(2025, 1, 31),
                        lifecycle_status=LifecycleStatus.ACTIVE.value)
        waiting = add_reservation(member, date(2025, 1, 10), date(2025, 1, 17), seat_label="A2")

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.activated == 0
        assert statuses(db)[waiting.id][1] == LifecycleStatus.NOT_YET_ACTIVE.value

    def test_next_reservation_activates_once_the_first_expires(self, db, make_user, add_reservation):
        member = make_user().id
        first = add_reservation(member, date(2024, 12, 10), date(2025, 1, 9),
                                lifecycle_status=LifecycleStatus.ACTIVE.value)
        second = add_reservation(member, date(2025, 1, 10), date(2025, 2, 9), seat_label="A2")

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.expired == 1
        assert result.activated == 1
        rows = statuses(db)
        assert rows[first.id][1] == LifecycleStatus.EXPIRED.value
        assert rows[second.id][1] == LifecycleStatus.ACTIVE.value


class TestIdempotence:

    def test_second_pass_changes_nothing(self, db, make_user, add_reservation):
        add_reservation(make_user().id, date(2025, 1, 10), date(2025, 2, 9))
        add_reservation(make_user().id, date(2024, 12, 1), date(2024, 12, 31),
                        lifecycle_status=LifecycleStatus.ACTIVE.value, seat_label="A2")
        add_reservation(make_user().id, date(2025, 1, 12), date(2025, 2, 11),
                        payment_status=PaymentStatus.CASH_PENDING.value, payment_method="cash",
                        created_at=NOW - timedelta(days=3), seat_label="A3")

        first = LifecycleSweeper(db).run_pass(now=NOW)
        after_first = statuses(db)
        second = LifecycleSweeper(db).run_pass(now=NOW)

        assert first.total_changes > 0
        assert second.total_changes == 0
        assert statuses(db) == after_first


class TestRegistrationDrafts:
    """Abandoned sign-ups"""

    def test_drafts_purged_after_their_grace_windows(self, db, make_user, add_reservation):
        stale_draft = make_user(is_draft=True, created_at=NOW - timedelta(minutes=40))
        fresh_draft = make_user(is_draft=True, created_at=NOW - timedelta(minutes=20))
        verified_recent = make_user(is_email_verified=True, created_at=NOW - timedelta(days=2))
        never_paid = make_user(is_email_verified=True, created_at=NOW - timedelta(days=11))
        admin = make_user(role=UserRole.ADMIN.value, is_draft=True, created_at=NOW - timedelta(days=30))
        with_booking = make_user(is_draft=True, created_at=NOW - timedelta(days=30))
        add_reservation(with_booking.id, date(2025, 1, 20), date(2025, 1, 27),
                        payment_status=PaymentStatus.PENDING.value)
        with_id = make_user(has_membership_id=True, membership_id="202412001",
                            registration_period="202412", registration_number=1,
                            created_at=NOW - timedelta(days=30))

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.drafts_purged == 2
        remaining = {u.id for u in db.query(User).all()}
        db.commit()
        assert stale_draft.id not in remaining
        assert never_paid.id not in remaining
        assert {fresh_draft.id, verified_recent.id, admin.id, with_booking.id, with_id.id} <= remaining


class TestIdentifierBackfill:

    def test_paid_member_without_identifier_gets_one(self, db, make_user, add_reservation):
        member = make_user()
        add_reservation(member.id, date(2025, 1, 12), date(2025, 2, 11))
        unpaid = make_user()
        add_reservation(unpaid.id, date(2025, 1, 12), date(2025, 2, 11),
                        payment_status=PaymentStatus.PENDING.value, seat_label="A2")

        result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.identifiers_issued == 1
        ids = {u.id: u.membership_id for u in db.query(User).populate_existing().all()}
        db.commit()
        assert ids[member.id] == "202501001"
        assert ids[unpaid.id] is None


class TestFailures:
    """Failed batches and unreachable storage"""

    def test_failed_batch_is_counted_and_pass_continues(self, db, make_user, add_reservation):
        starting = add_reservation(make_user().id, date(2025, 1, 10), date(2025, 2, 9))
        locked = OperationalError("UPDATE reservations", {}, Exception("database is locked"))
        with patch("studyroom.services.lifecycle_sweeper.get_pending_with_skip_locked",
                   side_effect=locked):
            result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.skipped is False
        assert result.batch_errors == 4
        assert len(result.errors) == 4
        assert statuses(db)[starting.id][1] == LifecycleStatus.NOT_YET_ACTIVE.value

        # The next pass picks the row up
        assert LifecycleSweeper(db).run_pass(now=NOW).activated == 1

    def test_lost_connection_skips_the_pass(self, db, make_user, add_reservation):
        add_reservation(make_user().id, date(2025, 1, 10), date(2025, 2, 9))
        gone = OperationalError("SELECT", {}, Exception("server closed the connection unexpectedly"))

        with patch("studyroom.services.lifecycle_sweeper.get_pending_with_skip_locked",
                   side_effect=gone):
            result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.skipped is True
        assert "unavailable" in result.skip_reason.lower()

    def test_unreachable_database_skips_before_any_work(self, db):
        with patch.object(LifecycleSweeper, "_check_storage",
                          side_effect=StorageUnavailableError("Storage unavailable during sweep")):
            result = LifecycleSweeper(db).run_pass(now=NOW)

        assert result.skipped is True
        assert result.total_changes == 0
        assert result.finished_at is not None


class TestScheduler:

    def test_run_sweep_records_status(self, session_factory, make_user, add_reservation):
        add_reservation(make_user().id, date(2025, 1, 10), date(2025, 2, 9))

        result = run_sweep(session_factory, now=NOW)

        assert isinstance(result, SweepResult)
        assert result.activated == 1
        status = get_sweeper_status()
        assert status["last_result"]["activated"] == 1
        assert status["last_result"]["total_changes"] == result.total_changes


class TestExpiryReport:

    def test_counts(self, db, make_user, add_reservation):
        add_reservation(make_user().id, date(2025, 1, 1), date(2025, 1, 10),
                        lifecycle_status=LifecycleStatus.ACTIVE.value)
        add_reservation(make_user().id, date(2025, 1, 5), date(2025, 1, 15),
                        lifecycle_status=LifecycleStatus.ACTIVE.value, seat_label="A2")
        add_reservation(make_user().id, date(2024, 12, 1), date(2025, 1, 5),
                        lifecycle_status=LifecycleStatus.ACTIVE.value, seat_label="A3")
        add_reservation(make_user().id, date(2025, 1, 12), date(2025, 2, 11),
                        payment_status=PaymentStatus.CASH_PENDING.value, payment_method="cash",
                        created_at=NOW - timedelta(hours=50), seat_label="A4")

        report = LifecycleSweeper(db).expiry_report(now=NOW)

        assert report["date"] == "2025-01-10"
        assert report["active"] == 2
        assert report["expiring_today"] == 1
        assert report["expiring_within_7_days"] == 1
        assert report["stale_active"] == 1
        assert report["cash_pending"] == 0
        assert report["cash_overdue"] == 1

    def test_lists_members_expiring_this_week(self, db, make_user, add_reservation):
        today_user = make_user(full_name="Asha Rao")
        soon_user = make_user(full_name="Ravi Nair")
        add_reservation(soon_user.id, date(2025, 1, 5), date(2025, 1, 16),
                        lifecycle_status=LifecycleStatus.ACTIVE.value, seat_label="B1")
        add_reservation(today_user.id, date(2025, 1, 1), date(2025, 1, 10),
                        lifecycle_status=LifecycleStatus.ACTIVE.value, seat_label="A1")
        add_reservation(make_user().id, date(2025, 1, 5), date(2025, 1, 13),
                        lifecycle_status=LifecycleStatus.ACTIVE.value, seat_label="A2")
        # Outside the week, and not paid
        add_reservation(make_user().id, date(2025, 1, 5), date(2025, 1, 18), seat_label="A3")
        add_reservation(make_user().id, date(2025, 1, 5), date(2025, 1, 12),
                        payment_status=PaymentStatus.CASH_PENDING.value, payment_method="cash",
                        created_at=NOW - timedelta(hours=1), seat_label="A4")

        expiring = LifecycleSweeper(db).expiry_report(now=NOW)["expiring_soon"]

        assert [e["seat_label"] for e in expiring] == ["A1", "A2", "B1"]
        assert [e["days_left"] for e in expiring] == [0, 3, 6]
        assert expiring[0]["full_name"] == "Asha Rao"
        assert expiring[0]["user_id"] == today_user.id
        assert expiring[0]["end_date"] == "2025-01-10"
        assert [e["is_expiring_today"] for e in expiring] == [True, False, False]
        assert [e["is_expiring_soon"] for e in expiring] == [True, True, False]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
