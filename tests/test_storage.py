"""
Tests for the storage backends and their transaction handling.
"""

import threading

import pytest

from conftest import USER, utc
from slotbook.adapters.memory_store import MemoryStorage
from slotbook.adapters.sql_store import SqlStorage
from slotbook.domain.exceptions import ConflictError
from slotbook.domain.models import AvailabilityRule, Booking, BookingStatus


def _rule(**overrides) -> AvailabilityRule:
    data = dict(
        user_id=USER, day_of_week=1, start_time="09:00", end_time="10:00", slot_length_minutes=30,
    )
    data.update(overrides)
    return AvailabilityRule(**data)


def _booking(start="2024-11-25 09:00", end="2024-11-25 09:30", user_id=USER) -> Booking:
    return Booking(
        user_id=user_id,
        candidate_email="candidate@example.com",
        start_at=utc(start),
        end_at=utc(end),
        source="test",
    )


class TestTransactions:
    """Commit and rollback behaviour shared by all stores."""

    def test_clean_exit_commits(self, storage):
        with storage.begin() as tx:
            rule_id = tx.rules.insert(_rule())

        with storage.begin() as tx:
            assert tx.rules.get(USER, rule_id) is not None

    def test_exception_rolls_back(self, storage):
        with pytest.raises(RuntimeError):
            with storage.begin() as tx:
                tx.rules.insert(_rule())
                tx.bookings.insert(_booking())
                raise RuntimeError("boom")

        with storage.begin() as tx:
            assert tx.rules.list(USER) == []
            assert tx.bookings.list(USER) == []

    def test_interrupt_rolls_back(self, storage):
        """A cancelled caller leaves no partial writes."""
        with pytest.raises(KeyboardInterrupt):
            with storage.begin() as tx:
                tx.bookings.insert(_booking())
                raise KeyboardInterrupt

        with storage.begin() as tx:
            assert tx.bookings.list(USER) == []

    def test_explicit_rollback(self, storage):
        """A commit after rollback is a no-op."""
        tx = storage.begin()
        tx.rules.insert(_rule())
        tx.rollback()
        tx.commit()

        with storage.begin() as check:
            assert check.rules.list(USER) == []

    def test_writes_are_visible_inside_their_transaction(self, storage):
        with storage.begin() as tx:
            booking = tx.bookings.insert(_booking())
            assert tx.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00")) == booking.id


class TestRuleRepository:
    """Rule persistence."""

    def test_list_keeps_creation_order(self, storage):
        with storage.begin() as tx:
            first = tx.rules.insert(_rule(day_of_week=5))
            second = tx.rules.insert(_rule(day_of_week=2))
        with storage.begin() as tx:
            third = tx.rules.insert(_rule(day_of_week=0))

        with storage.begin() as tx:
            assert [r.id for r in tx.rules.list(USER)] == [first, second, third]

    def test_update_missing_rule_returns_none(self, storage):
        with storage.begin() as tx:
            assert tx.rules.update(_rule(id="missing")) is None

    def test_round_trip_fields(self, storage):
        with storage.begin() as tx:
            rule_id = tx.rules.insert(_rule(title="Mornings", available=False, slot_length_minutes=20))

        with storage.begin() as tx:
            rule = tx.rules.get(USER, rule_id)

        assert rule.title == "Mornings"
        assert rule.available is False
        assert rule.slot_length_minutes == 20
        assert rule.start_time == "09:00"
        assert rule.created_at.timezone_name == "UTC"


class TestBookingRepository:
    """Booking persistence."""

    def test_insert_and_status(self, storage):
        with storage.begin() as tx:
            booking = tx.bookings.insert(_booking())

        with storage.begin() as tx:
            assert tx.bookings.get_status(booking.id) == BookingStatus.CONFIRMED
            assert tx.bookings.get_status("missing") is None

    def test_cancel_is_conditional(self, storage):
        with storage.begin() as tx:
            booking = tx.bookings.insert(_booking())

        with storage.begin() as tx:
            assert tx.bookings.cancel(booking.id) == 1
        with storage.begin() as tx:
            assert tx.bookings.cancel(booking.id) == 0
            assert tx.bookings.get_status(booking.id) == BookingStatus.CANCELLED

    def test_confirmed_range_is_half_open(self, storage):
        with storage.begin() as tx:
            tx.bookings.insert(_booking("2024-11-25 09:00", "2024-11-25 09:30"))
            tx.bookings.insert(_booking("2024-11-25 10:00", "2024-11-25 10:30"))

        with storage.begin() as tx:
            found = tx.bookings.list_confirmed_in_range(
                USER, utc("2024-11-25 09:00"), utc("2024-11-25 10:00")
            )

        assert [b.start_at for b in found] == [utc("2024-11-25 09:00")]

    def test_cancelled_bookings_are_excluded_from_range(self, storage):
        with storage.begin() as tx:
            booking = tx.bookings.insert(_booking())
        with storage.begin() as tx:
            tx.bookings.cancel(booking.id)

        with storage.begin() as tx:
            assert tx.bookings.list_confirmed_in_range(
                USER, utc("2024-11-25 00:00"), utc("2024-11-26 00:00")
            ) == []
            assert tx.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00")) is None

    def test_second_confirmed_booking_at_same_start_conflicts(self, storage):
        """The store itself refuses two confirmed bookings for one user and start."""
        with storage.begin() as tx:
            tx.bookings.insert(_booking())

        with pytest.raises(ConflictError):
            with storage.begin() as tx:
                tx.bookings.insert(_booking())

        with storage.begin() as tx:
            assert len(tx.bookings.list(USER)) == 1


class TestMemoryLocks:
    """Key locks of the in-memory store."""

    def test_same_key_waits_for_commit(self):
        storage = MemoryStorage()
        holder = storage.begin()
        holder.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00"), lock=True)
        acquired = threading.Event()

        def contender():
            with storage.begin() as tx:
                tx.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00"), lock=True)
                acquired.set()

        thread = threading.Thread(target=contender)
        thread.start()
        assert not acquired.wait(timeout=0.2)

        holder.commit()
        thread.join(timeout=5)
        assert acquired.is_set()

    def test_different_keys_do_not_block(self):
        storage = MemoryStorage()
        holder = storage.begin()
        holder.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00"), lock=True)
        acquired = threading.Event()

        def other_key():
            with storage.begin() as tx:
                tx.bookings.find_confirmed_at(USER, utc("2024-11-25 09:30"), lock=True)
                acquired.set()

        thread = threading.Thread(target=other_key)
        thread.start()
        try:
            assert acquired.wait(timeout=5)
        finally:
            holder.rollback()
            thread.join(timeout=5)

    def test_relocking_in_same_transaction_does_not_deadlock(self):
        storage = MemoryStorage()

        with storage.begin() as tx:
            tx.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00"), lock=True)
            assert tx.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00"), lock=True) is None

    def test_released_keys_are_forgotten(self):
        """Key locks are dropped once their transactions end."""
        storage = MemoryStorage()

        for minute in ("00", "30"):
            with storage.begin() as tx:
                tx.bookings.find_confirmed_at(USER, utc(f"2024-11-25 09:{minute}"), lock=True)
                tx.bookings.cancel("some-booking")
            assert storage._key_locks == {}

    def test_waiter_gets_key_after_release(self):
        storage = MemoryStorage()
        holder = storage.begin()
        holder.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00"), lock=True)
        done = threading.Event()

        def waiter():
            with storage.begin() as tx:
                tx.bookings.find_confirmed_at(USER, utc("2024-11-25 09:00"), lock=True)
            done.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        assert not done.wait(timeout=0.2)

        holder.rollback()
        thread.join(timeout=5)
        assert done.is_set()
        assert storage._key_locks == {}


class TestSqlStorage:
    """SQL specific behaviour."""

    def test_schema_creation_is_idempotent(self, tmp_path):
        store = SqlStorage.from_url(f"sqlite:///{tmp_path / 'twice.db'}")
        store.create_schema()
        store.create_schema()

        with store.begin() as tx:
            assert tx.rules.list(USER) == []
        store.dispose()

    def test_timestamps_round_trip_as_utc(self, tmp_path):
        store = SqlStorage.from_url(f"sqlite:///{tmp_path / 'utc.db'}")
        store.create_schema()

        with store.begin() as tx:
            booking = tx.bookings.insert(_booking())

        with store.begin() as tx:
            loaded = tx.bookings.list(USER)[0]

        assert loaded.id == booking.id
        assert loaded.start_at == utc("2024-11-25 09:00")
        assert loaded.start_at.timezone_name == "UTC"
        assert loaded.source == "test"
        store.dispose()
