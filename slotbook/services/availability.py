"""
Availability rules and slot derivation.

The service owns the rule write path and the read path used by both the
slot listing and the booking resolver. Slot listing opens its own
short-lived transaction; the booking resolver passes in its locked
transaction so the derivation sees the same state the lock protects.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence

from ..adapters.storage import StorageProtocol, TransactionProtocol
from ..domain.exceptions import InvalidRangeError, NotFoundError
from ..domain.models import (
    AvailabilityRule,
    Booking,
    RuleInput,
    RuleUpdate,
    Slot,
    TimeRange,
    to_utc,
    validate_rule_fields,
)
from ..domain.slot_calculator import SlotCalculator

logger = logging.getLogger(__name__)


def make_window(start: datetime, end: datetime) -> TimeRange:
    """Normalize both ends to UTC and require ``start < end``."""
    start_utc = to_utc(start)
    end_utc = to_utc(end)
    if start_utc >= end_utc:
        raise InvalidRangeError("from must be before to")
    return TimeRange(start=start_utc, end=end_utc)


class AvailabilityService:
    """
    Manages availability rules and derives free slots from them.

    Rules are validated before they are written. A batch is written one
    rule per transaction, so an invalid rule late in a batch leaves the
    earlier ones persisted.
    """

    def __init__(
        self,
        storage: StorageProtocol,
        slot_calculator: Optional[SlotCalculator] = None,
    ) -> None:
        self._storage = storage
        self._slot_calculator = slot_calculator or SlotCalculator()

    def set_availability(
        self,
        user_id: str,
        rules: Sequence[RuleInput],
    ) -> List[AvailabilityRule]:
        """
        Create one or more rules for a user.

        Raises:
            ValidationError: On the first invalid rule
        """
        saved: List[AvailabilityRule] = []

        for rule_input in rules:
            start_time, end_time = validate_rule_fields(
                rule_input.day_of_week,
                rule_input.start_time,
                rule_input.end_time,
                rule_input.slot_length_minutes,
            )
            rule = AvailabilityRule(
                user_id=user_id,
                day_of_week=rule_input.day_of_week,
                start_time=start_time,
                end_time=end_time,
                slot_length_minutes=rule_input.slot_length_minutes,
                available=rule_input.available,
                title=rule_input.title or "",
            )
            with self._storage.begin() as tx:
                rule_id = tx.rules.insert(rule)
                stored = tx.rules.get(user_id, rule_id)
            saved.append(stored)
            logger.info(
                "Saved availability rule %s for user %s (day %s, %s-%s)",
                rule_id, user_id, rule.day_of_week, start_time, end_time,
            )

        return saved

    def update_availability(
        self,
        user_id: str,
        rule_id: str,
        changes: RuleUpdate,
    ) -> AvailabilityRule:
        """
        Update a rule in place; fields left as ``None`` keep their stored value.

        Raises:
            NotFoundError: If the rule does not exist for this user
            ValidationError: If the merged rule is invalid
        """
        with self._storage.begin() as tx:
            existing = tx.rules.get(user_id, rule_id)
            if existing is None:
                raise NotFoundError("availability not found")

            merged = replace(
                existing,
                day_of_week=_pick(changes.day_of_week, existing.day_of_week),
                start_time=_pick(changes.start_time, _stored_time(existing.start_time)),
                end_time=_pick(changes.end_time, _stored_time(existing.end_time)),
                slot_length_minutes=_pick(changes.slot_length_minutes, existing.slot_length_minutes),
                available=_pick(changes.available, existing.available),
                title=_pick(changes.title, existing.title),
            )
            merged.start_time, merged.end_time = validate_rule_fields(
                merged.day_of_week,
                merged.start_time,
                merged.end_time,
                merged.slot_length_minutes,
            )

            updated = tx.rules.update(merged)
            if updated is None:
                raise NotFoundError("availability not found")

        logger.info("Updated availability rule %s for user %s", rule_id, user_id)
        return updated

    def list_availability(self, user_id: str) -> List[AvailabilityRule]:
        with self._storage.begin() as tx:
            return tx.rules.list(user_id)

    def get_slots(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        tx: Optional[TransactionProtocol] = None,
    ) -> List[Slot]:
        """
        Derive the free slots of a user inside ``[window_start, window_end]``.

        Args:
            user_id: Owner of the rules and bookings
            window_start: Start of the window (any offset, normalized to UTC)
            window_end: End of the window
            tx: Existing transaction to read through; a new one is opened if omitted

        Raises:
            InvalidRangeError: If the window does not start before it ends
            ValidationError: If a matching stored rule has unordered times
        """
        window = make_window(window_start, window_end)

        if tx is not None:
            return self._derive(tx, user_id, window)

        with self._storage.begin() as own_tx:
            return self._derive(own_tx, user_id, window)

    def list_bookings(
        self,
        user_id: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[Booking]:
        """
        Non-cancelled bookings of a user, ordered by start.

        The range filter only applies when both ends are given.
        """
        start = end = None
        if window_start is not None and window_end is not None:
            window = make_window(window_start, window_end)
            start, end = window.start, window.end

        with self._storage.begin() as tx:
            return tx.bookings.list(user_id, start, end)

    def _derive(
        self,
        tx: TransactionProtocol,
        user_id: str,
        window: TimeRange,
    ) -> List[Slot]:
        rules = tx.rules.list(user_id)
        if not rules:
            return []

        def load_bookings(booking_window: TimeRange) -> List[Booking]:
            return tx.bookings.list_confirmed_in_range(
                user_id, booking_window.start, booking_window.end
            )

        slots = self._slot_calculator.derive(rules, window, load_bookings)
        logger.debug(
            "Derived %d slot(s) for user %s from %d rule(s)",
            len(slots), user_id, len(rules),
        )
        return slots


def _pick(value, fallback):
    return fallback if value is None else value


def _stored_time(value: str) -> str:
    # Stores may hand back HH:MM:SS
    return value[:5]
