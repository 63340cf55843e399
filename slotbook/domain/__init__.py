"""
Domain layer - Pure business logic without external dependencies.
"""

from .models import (
    AvailabilityRule,
    Booking,
    BookingInput,
    BookingStatus,
    RuleInput,
    RuleUpdate,
    Slot,
    TimeRange,
)
from .slot_calculator import SlotCalculator

__all__ = [
    "AvailabilityRule",
    "Booking",
    "BookingInput",
    "BookingStatus",
    "RuleInput",
    "RuleUpdate",
    "Slot",
    "TimeRange",
    "SlotCalculator",
]
