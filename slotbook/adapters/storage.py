"""
Storage capability interface shared by all store implementations.

Every store exposes ``begin()`` which returns a scoped transaction handle.
The handle carries the rule and booking repositories for that transaction
and is used as a context manager: it commits when the block exits cleanly
and rolls back on any exception (``KeyboardInterrupt`` included).
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from pendulum import DateTime

from ..domain.models import AvailabilityRule, Booking, BookingStatus

logger = logging.getLogger(__name__)


class RuleRepositoryProtocol(Protocol):
    """Availability rule persistence."""

    def insert(self, rule: AvailabilityRule) -> str:
        """Persist a new rule and return its id."""

    def get(self, user_id: str, rule_id: str) -> Optional[AvailabilityRule]:
        """Fetch a rule owned by ``user_id`` or ``None``."""

    def list(self, user_id: str) -> List[AvailabilityRule]:
        """All rules of a user in creation order."""

    def update(self, rule: AvailabilityRule) -> Optional[AvailabilityRule]:
        """Overwrite a stored rule in place; ``None`` if it no longer exists."""


class BookingRepositoryProtocol(Protocol):
    """Booking persistence."""

    def list(
        self,
        user_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
    ) -> List[Booking]:
        """Non-cancelled bookings ordered by start, optionally with start in [start, end)."""

    def list_confirmed_in_range(
        self,
        user_id: str,
        start: DateTime,
        end: DateTime,
    ) -> List[Booking]:
        """Confirmed bookings whose start lies in [start, end)."""

    def find_confirmed_at(
        self,
        user_id: str,
        start: DateTime,
        lock: bool = False,
    ) -> Optional[str]:
        """
        Id of the confirmed booking starting exactly at ``start``.

        With ``lock=True`` the ``(user_id, start)`` key stays locked until
        the transaction ends, so concurrent lookups for the same key wait.
        """

    def insert(self, booking: Booking) -> Booking:
        """Persist a booking and return it with its id assigned."""

    def get_status(self, booking_id: str) -> Optional[BookingStatus]:
        """Current status of a booking or ``None`` if unknown."""

    def cancel(self, booking_id: str) -> int:
        """Mark a non-cancelled booking cancelled; returns affected rows."""


class TransactionProtocol(Protocol):
    rules: RuleRepositoryProtocol
    bookings: BookingRepositoryProtocol

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def __enter__(self) -> "TransactionProtocol": ...

    def __exit__(self, exc_type, exc, tb) -> None: ...


class StorageProtocol(Protocol):
    """Anything that can open a transaction."""

    def begin(self) -> TransactionProtocol:
        """Open a new transaction owned by the caller."""


class ScopedTransaction:
    """
    Context manager behaviour for transaction handles.

    Subclasses implement ``_do_commit``, ``_do_rollback`` and ``_close``.
    """

    def __init__(self) -> None:
        self._finished = False

    def commit(self) -> None:
        if self._finished:
            return
        try:
            self._do_commit()
        except BaseException:
            self._safe_rollback()
            raise
        finally:
            self._finish()

    def rollback(self) -> None:
        if self._finished:
            return
        try:
            self._do_rollback()
        finally:
            self._finish()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            logger.debug("Rolling back transaction after %s", exc_type.__name__)
            self.rollback()

    def _safe_rollback(self) -> None:
        try:
            self._do_rollback()
        except Exception as exc:
            logger.warning("Rollback after failed commit also failed: %s", exc)

    def _finish(self) -> None:
        self._finished = True
        self._close()

    def _do_commit(self) -> None:
        raise NotImplementedError

    def _do_rollback(self) -> None:
        raise NotImplementedError

    def _close(self) -> None:
        """Release resources held by the transaction."""
