"""
Booking creation and cancellation.

``create_booking`` runs the whole check-then-insert sequence inside a
single transaction:

1. normalize the requested interval to UTC
2. look up a confirmed booking at the same start while locking that key
3. re-derive slots for ``[start - 1s, end + 1s]`` through the same
   transaction and require an exact match
4. insert the booking and commit

Concurrent requests for the same ``(user_id, start)`` wait on the lock in
step 2, so exactly one of them can succeed. Nothing is retried here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from ..adapters.storage import StorageProtocol
from ..domain.exceptions import (
    AlreadyCancelledError,
    ConflictError,
    InvalidRangeError,
    NotFoundError,
    ValidationError,
)
from ..domain.models import Booking, BookingInput, BookingStatus, to_utc
from .availability import AvailabilityService

logger = logging.getLogger(__name__)

REVALIDATION_MARGIN_SECONDS = 1


class BookingService:
    """Validates booking requests against live availability and records them."""

    def __init__(
        self,
        storage: StorageProtocol,
        availability: AvailabilityService,
    ) -> None:
        self._storage = storage
        self._availability = availability

    def create_booking(self, user_id: str, request: BookingInput) -> Booking:
        """
        Book exactly one derived slot for ``user_id``.

        Raises:
            ConflictError: If a confirmed booking already starts at ``request.start``
            ValidationError: If the interval is not one of the user's free slots
        """
        if not request.candidate_email:
            raise ValidationError("candidate_email is required")

        start = to_utc(request.start)
        end = to_utc(request.end)
        if start >= end:
            raise InvalidRangeError("start must be before end")

        with self._storage.begin() as tx:
            existing_id = tx.bookings.find_confirmed_at(user_id, start, lock=True)
            if existing_id is not None:
                logger.warning(
                    "Rejected booking for user %s at %s: slot already booked by %s",
                    user_id, start.to_iso8601_string(), existing_id,
                )
                raise ConflictError("slot already booked")

            slots = self._availability.get_slots(
                user_id,
                start.subtract(seconds=REVALIDATION_MARGIN_SECONDS),
                end.add(seconds=REVALIDATION_MARGIN_SECONDS),
                tx=tx,
            )
            if not any(slot.matches(start, end) for slot in slots):
                logger.warning(
                    "Rejected booking for user %s at %s-%s: slot not available",
                    user_id, start.to_iso8601_string(), end.to_iso8601_string(),
                )
                raise ValidationError("slot not available")

            booking = tx.bookings.insert(
                Booking(
                    user_id=user_id,
                    candidate_email=request.candidate_email,
                    start_at=start,
                    end_at=end,
                    status=BookingStatus.CONFIRMED,
                    source=request.source,
                    booking_type=request.booking_type,
                    description=request.description,
                    title=request.title,
                )
            )

        logger.info(
            "Created booking %s for user %s at %s",
            booking.id, user_id, start.to_iso8601_string(),
        )
        return booking

    def cancel_booking(self, booking_id: str) -> None:
        """
        Cancel a confirmed booking.

        Raises:
            NotFoundError: If the id is unknown, or a concurrent cancel won the race
            AlreadyCancelledError: If the booking is already cancelled
        """
        with self._storage.begin() as tx:
            status = tx.bookings.get_status(booking_id)
            if status is None:
                raise NotFoundError("booking not found")
            if status == BookingStatus.CANCELLED:
                raise AlreadyCancelledError("already cancelled")

            if tx.bookings.cancel(booking_id) == 0:
                raise NotFoundError("booking not found")

        logger.info("Cancelled booking %s", booking_id)

    def list_bookings(
        self,
        user_id: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[Booking]:
        return self._availability.list_bookings(user_id, window_start, window_end)
