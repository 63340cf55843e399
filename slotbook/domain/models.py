"""
Domain models for availability rules, derived slots and bookings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Optional

import pendulum
from pendulum import DateTime

from .exceptions import InvalidRangeError, ValidationError

CANONICAL_TZ = "UTC"
TIME_OF_DAY_FORMAT = "%H:%M"


def to_utc(value: datetime | str, tz: str = CANONICAL_TZ) -> DateTime:
    """
    Normalize an instant to the canonical UTC reference frame.

    Naive values (and offset-less strings) are interpreted in ``tz``.
    """
    if isinstance(value, str):
        try:
            parsed = pendulum.parse(value, tz=tz)
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp: {value!r}") from exc
        if not isinstance(parsed, DateTime):
            raise ValidationError(f"Timestamp must include a date: {value!r}")
        return parsed.in_timezone(CANONICAL_TZ)
    return pendulum.instance(value, tz=tz).in_timezone(CANONICAL_TZ)


def utc_now() -> DateTime:
    return pendulum.now(CANONICAL_TZ)


def parse_time_of_day(value: str) -> time:
    """
    Parse a stored time-of-day.

    Only the leading ``HH:MM`` part is considered, so values that come back
    from the database as ``HH:MM:SS`` are accepted too.
    """
    if value is None or len(value) < 5:
        raise ValidationError(f"Invalid time of day: {value!r}")
    try:
        return datetime.strptime(value[:5], TIME_OF_DAY_FORMAT).time()
    except ValueError as exc:
        raise ValidationError(f"Invalid time of day: {value!r}") from exc


def normalize_time_of_day(value: str) -> str:
    """Validate a caller supplied ``HH:MM`` string and return it zero-padded."""
    if not isinstance(value, str):
        raise ValidationError(f"Time of day must be a string, got {value!r}")
    try:
        parsed = datetime.strptime(value.strip(), TIME_OF_DAY_FORMAT).time()
    except ValueError as exc:
        raise ValidationError(f"Time of day must be HH:MM, got {value!r}") from exc
    return parsed.strftime(TIME_OF_DAY_FORMAT)


def weekday_number(dt: datetime) -> int:
    """Weekday with Sunday=0 ... Saturday=6."""
    return dt.isoweekday() % 7


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable time range with start and end datetime.

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidRangeError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another."""
        return self.start < other.end and self.end > other.start

    def pad(self, minutes: int = 0, seconds: int = 0) -> "TimeRange":
        """Return a copy widened on both sides."""
        return TimeRange(
            start=self.start.subtract(minutes=minutes, seconds=seconds),
            end=self.end.add(minutes=minutes, seconds=seconds),
        )

    def __str__(self) -> str:
        return f"{self.start.format('YYYY-MM-DD HH:mm')} - {self.end.format('HH:mm')}"


@dataclass(frozen=True)
class Slot(TimeRange):
    """A concrete bookable interval derived from a rule for one date."""

    def matches(self, start: DateTime, end: DateTime) -> bool:
        return self.start == start and self.end == end


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


@dataclass
class AvailabilityRule:
    """
    A recurring weekly window for one user, tiled into fixed-length slots.

    ``start_time`` and ``end_time`` are ``HH:MM`` strings as persisted.
    """
    user_id: str
    day_of_week: int  # 0=Sunday, 6=Saturday
    start_time: str
    end_time: str
    slot_length_minutes: int
    available: bool = True
    title: str = ""
    id: Optional[str] = None
    created_at: Optional[DateTime] = None
    updated_at: Optional[DateTime] = None

    def window_on(self, day: DateTime) -> TimeRange:
        """
        Absolute window of this rule on the given (UTC) day.

        Raises:
            ValidationError: If the stored times are malformed or not ordered
        """
        start_tod = parse_time_of_day(self.start_time)
        end_tod = parse_time_of_day(self.end_time)
        if end_tod <= start_tod:
            raise ValidationError(f"end_time must be after start_time for rule {self.id}")
        if self.slot_length_minutes <= 0:
            raise ValidationError(f"slot_length_minutes must be positive for rule {self.id}")

        start = day.set(hour=start_tod.hour, minute=start_tod.minute, second=0, microsecond=0)
        end = day.set(hour=end_tod.hour, minute=end_tod.minute, second=0, microsecond=0)
        return TimeRange(start=start, end=end)


@dataclass
class RuleInput:
    """Caller supplied data for a new availability rule."""
    day_of_week: int
    start_time: str
    end_time: str
    slot_length_minutes: int
    available: bool = True
    title: str = ""


@dataclass
class RuleUpdate:
    """
    Partial update of an availability rule.

    ``None`` means "keep the stored value"; ``day_of_week=0`` is Sunday.
    """
    day_of_week: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    slot_length_minutes: Optional[int] = None
    available: Optional[bool] = None
    title: Optional[str] = None


def validate_rule_fields(
    day_of_week: int,
    start_time: str,
    end_time: str,
    slot_length_minutes: int,
) -> tuple[str, str]:
    """
    Validate rule fields and return the normalized ``(start_time, end_time)``.

    Raises:
        ValidationError: If any field is out of range
    """
    if isinstance(day_of_week, bool) or not isinstance(day_of_week, int) or not 0 <= day_of_week <= 6:
        raise ValidationError(f"day_of_week must be between 0 and 6, got {day_of_week!r}")
    if isinstance(slot_length_minutes, bool) or not isinstance(slot_length_minutes, int) or slot_length_minutes <= 0:
        raise ValidationError(
            f"slot_length_minutes must be a positive integer, got {slot_length_minutes!r}"
        )

    start = normalize_time_of_day(start_time)
    end = normalize_time_of_day(end_time)
    if end <= start:
        raise ValidationError("end_time must be after start_time")
    return start, end


@dataclass
class BookingInput:
    """Caller supplied data for a booking request."""
    candidate_email: str
    start: datetime
    end: datetime
    source: str = ""
    booking_type: str = ""
    description: str = ""
    title: str = ""


@dataclass
class Booking:
    """A reservation of exactly one slot-shaped interval for a user."""
    user_id: str
    candidate_email: str
    start_at: DateTime
    end_at: DateTime
    status: BookingStatus = BookingStatus.CONFIRMED
    source: str = ""
    booking_type: str = ""
    description: str = ""
    title: str = ""
    id: Optional[str] = None
    created_at: DateTime = field(default_factory=utc_now)

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED
