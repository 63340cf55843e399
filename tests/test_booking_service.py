"""
Tests for the BookingService (conflict resolution and cancellation).
"""

from concurrent.futures import ThreadPoolExecutor

import pendulum
import pytest

from conftest import USER, monday_rule, utc
from slotbook.domain.exceptions import (
    AlreadyCancelledError,
    ConflictError,
    InvalidRangeError,
    NotFoundError,
    ValidationError,
)
from slotbook.domain.models import BookingInput, BookingStatus
from slotbook.services.booking import BookingService


def _request(start="2024-11-25 09:00", end="2024-11-25 09:30", **extra) -> BookingInput:
    return BookingInput(
        candidate_email=extra.pop("candidate_email", "candidate@example.com"),
        start=utc(start),
        end=utc(end),
        **extra,
    )


class _CancelledElsewhere:
    """Storage whose conditional cancel always finds the row already changed."""

    def __init__(self, storage):
        self._storage = storage

    def begin(self):
        tx = self._storage.begin()
        tx.bookings.cancel = lambda booking_id: 0
        return tx


@pytest.fixture
def monday(availability):
    availability.set_availability(USER, [monday_rule()])
    return availability


class TestCreateBooking:
    """Tests for creating bookings."""

    def test_booking_a_free_slot(self, monday, booking_service):
        booking = booking_service.create_booking(
            USER, _request(title="Intro call", source="web", booking_type="interview")
        )

        assert booking.id
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.start_at == utc("2024-11-25 09:00")
        assert booking.end_at == utc("2024-11-25 09:30")
        assert booking.title == "Intro call"
        assert booking.booking_type == "interview"
        assert booking.created_at is not None

    def test_booked_slot_disappears_from_listing(self, monday, booking_service):
        """Booking 09:00-09:30 leaves only 09:30-10:00."""
        booking_service.create_booking(USER, _request())

        slots = monday.get_slots(USER, utc("2024-11-25 00:00"), utc("2024-11-25 23:59"))

        assert [(s.start, s.end) for s in slots] == [
            (utc("2024-11-25 09:30"), utc("2024-11-25 10:00")),
        ]

    def test_unaligned_interval_is_not_available(self, monday, booking_service):
        """09:15-09:45 is not one of the tiled slots."""
        with pytest.raises(ValidationError, match="slot not available"):
            booking_service.create_booking(USER, _request("2024-11-25 09:15", "2024-11-25 09:45"))

        assert booking_service.list_bookings(USER) == []

    def test_sub_range_of_a_slot_is_not_available(self, monday, booking_service):
        with pytest.raises(ValidationError):
            booking_service.create_booking(USER, _request("2024-11-25 09:00", "2024-11-25 09:15"))

    def test_slot_on_wrong_weekday_is_not_available(self, monday, booking_service):
        with pytest.raises(ValidationError):
            booking_service.create_booking(USER, _request("2024-11-26 09:00", "2024-11-26 09:30"))

    def test_double_booking_is_a_conflict(self, monday, booking_service):
        booking_service.create_booking(USER, _request())

        with pytest.raises(ConflictError, match="slot already booked"):
            booking_service.create_booking(USER, _request(candidate_email="other@example.com"))

        assert len(booking_service.list_bookings(USER)) == 1

    def test_inverted_interval_is_rejected(self, monday, booking_service):
        with pytest.raises(InvalidRangeError):
            booking_service.create_booking(USER, _request("2024-11-25 09:30", "2024-11-25 09:00"))

    def test_candidate_email_is_required(self, monday, booking_service):
        with pytest.raises(ValidationError):
            booking_service.create_booking(USER, _request(candidate_email=""))

    def test_offset_input_is_normalized(self, monday, booking_service):
        request = BookingInput(
            candidate_email="candidate@example.com",
            start=pendulum.parse("2024-11-25T10:00:00+01:00"),
            end=pendulum.parse("2024-11-25T10:30:00+01:00"),
        )

        booking = booking_service.create_booking(USER, request)

        assert booking.start_at == utc("2024-11-25 09:00")
        assert booking.start_at.timezone_name == "UTC"

    def test_other_user_can_book_same_instant(self, availability, booking_service):
        availability.set_availability(USER, [monday_rule()])
        availability.set_availability("user-2", [monday_rule()])

        booking_service.create_booking(USER, _request())
        booking = booking_service.create_booking("user-2", _request())

        assert booking.user_id == "user-2"

    def test_unavailable_rule_cannot_be_booked(self, availability, booking_service):
        availability.set_availability(USER, [monday_rule(available=False)])

        with pytest.raises(ValidationError):
            booking_service.create_booking(USER, _request())

    def test_concurrent_requests_for_one_slot(self, monday, booking_service):
        """Exactly one of N simultaneous requests wins, the rest conflict."""
        attempts = 8

        def attempt(index):
            try:
                return booking_service.create_booking(
                    USER, _request(candidate_email=f"c{index}@example.com")
                )
            except ConflictError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=attempts) as pool:
            results = list(pool.map(attempt, range(attempts)))

        successes = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == attempts - 1
        assert len(booking_service.list_bookings(USER)) == 1

    def test_concurrent_requests_for_different_slots(self, monday, booking_service):
        starts = [("2024-11-25 09:00", "2024-11-25 09:30"), ("2024-11-25 09:30", "2024-11-25 10:00")]

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda se: booking_service.create_booking(USER, _request(*se)), starts))

        assert {b.start_at for b in results} == {utc(s) for s, _ in starts}

    def test_booked_long_slot_is_hidden_from_narrow_window(self, availability, booking_service):
        """A booked 3 hour slot stays hidden when the window starts mid-slot."""
        availability.set_availability(
            USER, [monday_rule(start_time="08:00", end_time="11:00", slot_length_minutes=180)]
        )
        booking_service.create_booking(USER, _request("2024-11-25 08:00", "2024-11-25 11:00"))

        slots = availability.get_slots(USER, utc("2024-11-25 10:00"), utc("2024-11-25 10:30"))

        assert slots == []


class TestCancelBooking:
    """Tests for cancelling bookings."""

    def test_cancel_frees_the_slot(self, monday, booking_service):
        booking = booking_service.create_booking(USER, _request())

        booking_service.cancel_booking(booking.id)

        slots = monday.get_slots(USER, utc("2024-11-25 00:00"), utc("2024-11-25 23:59"))
        assert len(slots) == 2
        assert booking_service.list_bookings(USER) == []

    def test_cancelled_slot_can_be_booked_again(self, monday, booking_service):
        first = booking_service.create_booking(USER, _request())
        booking_service.cancel_booking(first.id)

        second = booking_service.create_booking(USER, _request())

        assert second.id != first.id

    def test_cancel_losing_a_race_is_not_found(self, storage, monday, booking_service):
        """A conditional update that touches no row is reported as not found."""
        booking = booking_service.create_booking(USER, _request())
        racing = BookingService(_CancelledElsewhere(storage), monday)

        with pytest.raises(NotFoundError):
            racing.cancel_booking(booking.id)

        assert booking_service.list_bookings(USER)[0].id == booking.id

    def test_second_cancel_is_already_cancelled(self, monday, booking_service):
        booking = booking_service.create_booking(USER, _request())
        booking_service.cancel_booking(booking.id)

        with pytest.raises(AlreadyCancelledError):
            booking_service.cancel_booking(booking.id)

    def test_unknown_booking_is_not_found(self, booking_service):
        with pytest.raises(NotFoundError):
            booking_service.cancel_booking("does-not-exist")


class TestListBookings:
    """Tests for listing bookings."""

    def test_list_is_ordered_and_filtered(self, availability, booking_service):
        availability.set_availability(
            USER, [monday_rule(), monday_rule(day_of_week=2, start_time="14:00", end_time="15:00")]
        )
        tuesday = booking_service.create_booking(USER, _request("2024-11-26 14:00", "2024-11-26 14:30"))
        late = booking_service.create_booking(USER, _request("2024-11-25 09:30", "2024-11-25 10:00"))
        early = booking_service.create_booking(USER, _request())

        assert [b.id for b in booking_service.list_bookings(USER)] == [early.id, late.id, tuesday.id]

        monday_only = booking_service.list_bookings(USER, utc("2024-11-25 00:00"), utc("2024-11-26 00:00"))
        assert [b.id for b in monday_only] == [early.id, late.id]

    def test_cancelled_bookings_are_hidden(self, monday, booking_service):
        keep = booking_service.create_booking(USER, _request("2024-11-25 09:30", "2024-11-25 10:00"))
        drop = booking_service.create_booking(USER, _request())
        booking_service.cancel_booking(drop.id)

        assert [b.id for b in booking_service.list_bookings(USER)] == [keep.id]
