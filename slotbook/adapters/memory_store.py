"""
In-process store for tests, demos and single-process deployments.

Committed records live behind a single data lock. Each transaction buffers
its writes and applies them atomically on commit, so a rolled back
transaction leaves nothing behind. Row-level locking is emulated with one
``threading.Lock`` per locked key, held until the owning transaction ends.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from typing import Dict, Hashable, List, Optional, Set

from pendulum import DateTime

from ..domain.exceptions import ConflictError
from ..domain.models import AvailabilityRule, Booking, BookingStatus, utc_now
from .storage import ScopedTransaction

logger = logging.getLogger(__name__)


class _KeyLock:
    """A lock plus the number of transactions holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class MemoryStorage:
    """Thread-safe storage backed by plain dictionaries."""

    def __init__(self) -> None:
        self._data_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._key_locks: Dict[Hashable, _KeyLock] = {}
        self.rules: Dict[str, AvailabilityRule] = {}
        self.bookings: Dict[str, Booking] = {}

    def begin(self) -> "MemoryTransaction":
        return MemoryTransaction(self)

    def lock_key(self, key: Hashable) -> None:
        """Block until ``key`` is free, then hold it."""
        with self._registry_lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        entry.lock.acquire()

    def unlock_key(self, key: Hashable) -> None:
        """Release ``key``; the entry is dropped once nobody holds or waits on it."""
        with self._registry_lock:
            entry = self._key_locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._key_locks[key]
            entry.lock.release()


class MemoryTransaction(ScopedTransaction):
    """Transaction handle over a ``MemoryStorage``."""

    def __init__(self, storage: MemoryStorage) -> None:
        super().__init__()
        self._storage = storage
        self._new_rules: Dict[str, AvailabilityRule] = {}
        self._updated_rules: Dict[str, AvailabilityRule] = {}
        self._new_bookings: Dict[str, Booking] = {}
        self._cancelled: Set[str] = set()
        self._held: List[Hashable] = []
        self.rules = MemoryRuleRepository(self)
        self.bookings = MemoryBookingRepository(self)

    def acquire(self, key: Hashable) -> None:
        """Lock ``key`` until this transaction ends (re-entrant per transaction)."""
        if key in self._held:
            return
        self._storage.lock_key(key)
        self._held.append(key)

    # --- snapshots -----------------------------------------------------

    def rule_snapshot(self) -> List[AvailabilityRule]:
        with self._storage._data_lock:
            committed = list(self._storage.rules.values())
        merged = [self._updated_rules.get(rule.id, rule) for rule in committed]
        merged.extend(self._new_rules.values())
        return [replace(rule) for rule in merged]

    def booking_snapshot(self) -> List[Booking]:
        with self._storage._data_lock:
            committed = list(self._storage.bookings.values())
        merged = committed + list(self._new_bookings.values())
        return [
            replace(booking, status=BookingStatus.CANCELLED)
            if booking.id in self._cancelled
            else replace(booking)
            for booking in merged
        ]

    # --- ScopedTransaction hooks ---------------------------------------

    def _do_commit(self) -> None:
        storage = self._storage
        with storage._data_lock:
            for booking in self._new_bookings.values():
                for existing in storage.bookings.values():
                    if (
                        existing.is_confirmed
                        and existing.user_id == booking.user_id
                        and existing.start_at == booking.start_at
                        and existing.id not in self._cancelled
                    ):
                        raise ConflictError("slot already booked")

            storage.rules.update(self._updated_rules)
            storage.rules.update(self._new_rules)
            storage.bookings.update(self._new_bookings)
            for booking_id in self._cancelled:
                booking = storage.bookings.get(booking_id)
                if booking is not None:
                    storage.bookings[booking_id] = replace(
                        booking, status=BookingStatus.CANCELLED
                    )

    def _do_rollback(self) -> None:
        self._new_rules.clear()
        self._updated_rules.clear()
        self._new_bookings.clear()
        self._cancelled.clear()

    def _close(self) -> None:
        held = list(self._held)
        self._held.clear()
        for key in reversed(held):
            self._storage.unlock_key(key)


class MemoryRuleRepository:
    def __init__(self, tx: MemoryTransaction) -> None:
        self._tx = tx

    def insert(self, rule: AvailabilityRule) -> str:
        now = utc_now()
        stored = replace(rule, id=str(uuid.uuid4()), created_at=now, updated_at=now)
        self._tx._new_rules[stored.id] = stored
        return stored.id

    def get(self, user_id: str, rule_id: str) -> Optional[AvailabilityRule]:
        for rule in self._tx.rule_snapshot():
            if rule.id == rule_id and rule.user_id == user_id:
                return rule
        return None

    def list(self, user_id: str) -> List[AvailabilityRule]:
        return [rule for rule in self._tx.rule_snapshot() if rule.user_id == user_id]

    def update(self, rule: AvailabilityRule) -> Optional[AvailabilityRule]:
        if self.get(rule.user_id, rule.id) is None:
            return None
        stored = replace(rule, updated_at=utc_now())
        if stored.id in self._tx._new_rules:
            self._tx._new_rules[stored.id] = stored
        else:
            self._tx._updated_rules[stored.id] = stored
        return replace(stored)


class MemoryBookingRepository:
    def __init__(self, tx: MemoryTransaction) -> None:
        self._tx = tx

    def list(
        self,
        user_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
    ) -> List[Booking]:
        bookings = [
            booking for booking in self._tx.booking_snapshot()
            if booking.user_id == user_id and booking.status != BookingStatus.CANCELLED
        ]
        if start is not None and end is not None:
            bookings = [b for b in bookings if start <= b.start_at < end]
        return sorted(bookings, key=lambda b: b.start_at)

    def list_confirmed_in_range(
        self,
        user_id: str,
        start: DateTime,
        end: DateTime,
    ) -> List[Booking]:
        return [
            booking for booking in self._tx.booking_snapshot()
            if booking.user_id == user_id
            and booking.is_confirmed
            and start <= booking.start_at < end
        ]

    def find_confirmed_at(
        self,
        user_id: str,
        start: DateTime,
        lock: bool = False,
    ) -> Optional[str]:
        if lock:
            self._tx.acquire(("booking-start", user_id, start.int_timestamp))
        for booking in self._tx.booking_snapshot():
            if booking.user_id == user_id and booking.is_confirmed and booking.start_at == start:
                return booking.id
        return None

    def insert(self, booking: Booking) -> Booking:
        stored = replace(
            booking,
            id=str(uuid.uuid4()),
            status=BookingStatus.CONFIRMED,
            created_at=utc_now(),
        )
        self._tx._new_bookings[stored.id] = stored
        return replace(stored)

    def get_status(self, booking_id: str) -> Optional[BookingStatus]:
        for booking in self._tx.booking_snapshot():
            if booking.id == booking_id:
                return booking.status
        return None

    def cancel(self, booking_id: str) -> int:
        self._tx.acquire(("booking-id", booking_id))
        status = self.get_status(booking_id)
        if status is None or status == BookingStatus.CANCELLED:
            return 0
        self._tx._cancelled.add(booking_id)
        logger.debug("Booking %s marked for cancellation", booking_id)
        return 1
