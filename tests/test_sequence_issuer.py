"""
Tests for membership identifier issuance

Test Coverage:
1. Identifiers are unique within a period and numbered from 1 each period
2. Issuing twice for the same member returns the same identifier
3. Concurrent issuance for one member yields one identifier
4. Contention is retried with a growing delay, then SequenceExhausted
5. Connection loss surfaces as StorageUnavailable, not a retry
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from studyroom.exceptions import NotFoundError, SequenceExhaustedError, StorageUnavailableError
from studyroom.models.sequence_counter import SequenceCounter
from studyroom.models.user import User
from studyroom.services import issue_identifier
from studyroom.services.sequence_issuer import SequenceIssuer, render_identifier
from studyroom.utils.db_helpers import AtomicCounter

JAN = datetime(2025, 1, 5, 6, 30)
FEB = datetime(2025, 2, 3, 6, 30)


def locked_error():
    return OperationalError("INSERT INTO sequence_counters", {}, Exception("database is locked"))


class TestRenderIdentifier:

    def test_zero_padded_sequence(self):
        assert render_identifier("202501", 1, prefix="") == "202501001"
        assert render_identifier("202501", 42, prefix="SR") == "SR202501042"

    def test_sequence_past_padding(self):
        assert render_identifier("202501", 1234, prefix="") == "2025011234"


class TestIssueIdentifier:
    """Single-threaded issuance"""

    def test_first_member_of_the_period_gets_one(self, db, make_user):
        user = make_user()

        identity = SequenceIssuer(db, prefix="").issue_identifier(user.id, now=JAN)

        assert identity.period_key == "202501"
        assert identity.sequence == 1
        assert identity.membership_id == "202501001"
        assert identity.newly_issued is True

        stored = db.query(User).populate_existing().filter(User.id == user.id).one()
        db.commit()
        assert stored.has_membership_id is True
        assert stored.membership_id == "202501001"
        assert stored.registration_period == "202501"
        assert stored.registration_number == 1

    def test_issuing_again_returns_the_same_identifier(self, db, make_user):
        user = make_user()
        issuer = SequenceIssuer(db, prefix="")

        first = issuer.issue_identifier(user.id, now=JAN)
        again = issuer.issue_identifier(user.id, now=FEB)

        assert again.membership_id == first.membership_id
        assert again.period_key == "202501"
        assert again.newly_issued is False

        counter = db.query(SequenceCounter).filter(SequenceCounter.period_key == "202501").one()
        db.commit()
        assert counter.value == 1

    def test_members_get_consecutive_distinct_numbers(self, db, make_user):
        issuer = SequenceIssuer(db, prefix="")

        sequences = [issuer.issue_identifier(make_user().id, now=JAN).sequence for _ in range(5)]

        assert sequences == [1, 2, 3, 4, 5]

    def test_numbering_restarts_each_period(self, db, make_user):
        issuer = SequenceIssuer(db, prefix="")
        issuer.issue_identifier(make_user().id, now=JAN)
        issuer.issue_identifier(make_user().id, now=JAN)

        february = issuer.issue_identifier(make_user().id, now=FEB)

        assert february.membership_id == "202502001"

    def test_period_follows_the_business_timezone(self, db, make_user):
        # 20:00 UTC on Jan 31 is already Feb 1 in Asia/Kolkata
        identity = SequenceIssuer(db, prefix="").issue_identifier(
            make_user().id, now=datetime(2025, 1, 31, 20, 0)
        )
        assert identity.period_key == "202502"

    def test_unknown_member(self, db):
        with pytest.raises(NotFoundError):
            SequenceIssuer(db).issue_identifier("missing", now=JAN)

    def test_module_level_helper_uses_configured_settings(self, db, make_user):
        identity = issue_identifier(db, make_user().id, now=JAN)

        assert identity.sequence == 1
        assert identity.membership_id.endswith("202501001")


class TestConcurrentIssuance:
    """Racing callers"""

    def test_two_calls_for_one_member_agree(self, session_factory, make_user):
        user = make_user()

        def issue(_):
            session = session_factory()
            try:
                return SequenceIssuer(session, prefix="").issue_identifier(user.id, now=JAN)
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(issue, range(2)))

        assert {r.membership_id for r in results} == {"202501001"}
        assert sum(1 for r in results if r.newly_issued) == 1

        session = session_factory()
        try:
            next_member = SequenceIssuer(session, prefix="").issue_identifier(make_user().id, now=JAN)
        finally:
            session.close()
        assert next_member.sequence == 2

    def test_many_members_at_once_never_share_a_number(self, session_factory, make_user):
        user_ids = [make_user().id for _ in range(10)]

        def issue(user_id):
            session = session_factory()
            try:
                return SequenceIssuer(session, prefix="").issue_identifier(user_id, now=JAN).sequence
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=5) as executor:
            sequences = list(executor.map(issue, user_ids))

        assert sorted(sequences) == list(range(1, 11))


class TestRetries:
    """Bounded retry on contention"""

    def test_exhaustion_after_max_attempts(self, db, make_user):
        user = make_user()
        delays = []
        issuer = SequenceIssuer(db, max_attempts=3, retry_delay_ms=100, prefix="", sleep=delays.append)

        with patch.object(AtomicCounter, "upsert_increment", side_effect=locked_error()) as upsert:
            with pytest.raises(SequenceExhaustedError) as exc_info:
                issuer.issue_identifier(user.id, now=JAN)

        assert upsert.call_count == 3
        assert delays == [0.1, 0.2]
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

        stored = db.query(User).populate_existing().filter(User.id == user.id).one()
        db.commit()
        assert stored.has_membership_id is False
        assert stored.membership_id is None

    def test_retry_then_success_leaves_no_gap(self, db, make_user):
        user = make_user()
        delays = []
        issuer = SequenceIssuer(db, max_attempts=3, retry_delay_ms=100, prefix="", sleep=delays.append)
        original = AtomicCounter.upsert_increment
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise locked_error()
            return original(*args, **kwargs)

        with patch.object(AtomicCounter, "upsert_increment", side_effect=flaky):
            identity = issuer.issue_identifier(user.id, now=JAN)

        assert identity.sequence == 1
        assert delays == [0.1]

    def test_lost_connection_is_not_retried(self, db, make_user):
        user = make_user()
        delays = []
        issuer = SequenceIssuer(db, max_attempts=5, prefix="", sleep=delays.append)
        gone = OperationalError("INSERT", {}, Exception("could not connect to server: Connection refused"))

        with patch.object(AtomicCounter, "upsert_increment", side_effect=gone) as upsert:
            with pytest.raises(StorageUnavailableError):
                issuer.issue_identifier(user.id, now=JAN)

        assert upsert.call_count == 1
        assert delays == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
