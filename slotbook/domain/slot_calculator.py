"""
Slot derivation: weekly rules in, concrete free slots out.

Works on plain domain objects only; callers fetch rules and bookings.
"""

from typing import Callable, Iterable, List, Sequence

from pendulum import DateTime

from .models import AvailabilityRule, Booking, Slot, TimeRange, weekday_number


class SlotCalculator:
    """
    Expands weekly availability rules into concrete slots.

    Algorithm:
    1. Walk every UTC day from the day of the window start through the day
       of the window end
    2. For each rule matching the weekday, tile the rule's window into
       slots of ``slot_length_minutes`` (trailing partial slots are dropped)
    3. Keep slots that overlap the requested window (unclipped)
    4. Drop slots whose start equals the start of a confirmed booking

    Overlapping rules are not merged, so they yield duplicate slots.
    """

    # Minimum margin around the requested window when fetching bookings
    BOOKING_PADDING_MINUTES = 60

    def derive(
        self,
        rules: Sequence[AvailabilityRule],
        window: TimeRange,
        load_bookings: Callable[[TimeRange], Iterable[Booking]],
    ) -> List[Slot]:
        """
        Return the free slots of ``rules`` inside ``window``.

        Args:
            rules: The user's availability rules, in storage order
            window: Requested absolute window (UTC)
            load_bookings: Called once with the booking start range to look at,
                returns the confirmed bookings in it

        Returns:
            Free slots, day-major then rule order, ascending within a rule
        """
        candidates = self.expand_rules(rules, window)
        if not candidates:
            return []
        bookings = load_bookings(self.booking_window(window, candidates))
        return self.remove_booked(candidates, bookings)

    def expand_rules(
        self,
        rules: Sequence[AvailabilityRule],
        window: TimeRange,
    ) -> List[Slot]:
        """
        Generate every candidate slot of the rules within the window.

        Raises:
            ValidationError: If a matching rule has malformed or unordered times
        """
        candidates: List[Slot] = []
        if not rules:
            return candidates

        current = window.start.start_of("day")
        last_day = window.end.start_of("day")

        while current <= last_day:
            weekday = weekday_number(current)

            for rule in rules:
                if rule.day_of_week != weekday:
                    continue
                # Times are re-validated even for rules that yield nothing
                rule_window = rule.window_on(current)
                if not rule.available:
                    continue
                candidates.extend(
                    self._tile(rule_window, rule.slot_length_minutes, window)
                )

            current = current.add(days=1)

        return candidates

    def booking_window(
        self,
        window: TimeRange,
        candidates: Sequence[Slot] = (),
    ) -> TimeRange:
        """
        Range of booking start times that can affect slots in ``window``.

        At least one hour on each side. Slots longer than that may start
        further before the window, so the range reaches back to the
        earliest candidate start.
        """
        padded = window.pad(minutes=self.BOOKING_PADDING_MINUTES)
        earliest = min((slot.start for slot in candidates), default=padded.start)
        if earliest < padded.start:
            return TimeRange(start=earliest, end=padded.end)
        return padded

    def remove_booked(
        self,
        candidates: Sequence[Slot],
        bookings: Iterable[Booking],
    ) -> List[Slot]:
        """Drop candidates whose start exactly matches a confirmed booking start."""
        occupied = {
            booking.start_at.int_timestamp
            for booking in bookings
            if booking.is_confirmed
        }
        if not occupied:
            return list(candidates)

        return [
            slot for slot in candidates
            if slot.start.int_timestamp not in occupied
        ]

    def _tile(
        self,
        rule_window: TimeRange,
        slot_length_minutes: int,
        window: TimeRange,
    ) -> List[Slot]:
        """
        Split a rule window into consecutive slots.

        Example:
        Rule: 09:00 - 10:10, length 30
        Result: [09:00-09:30, 09:30-10:00] (10:00-10:10 is discarded)
        """
        slots: List[Slot] = []
        slot_start: DateTime = rule_window.start

        while True:
            slot_end = slot_start.add(minutes=slot_length_minutes)
            if slot_end > rule_window.end:
                break
            slot = Slot(start=slot_start, end=slot_end)
            # Overlap filter, not a clip
            if slot.overlaps(window):
                slots.append(slot)
            slot_start = slot_end

        return slots
