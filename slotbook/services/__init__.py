"""
Service layer helpers that orchestrate storage and domain logic.
"""

from .availability import AvailabilityService
from .booking import BookingService

__all__ = ["AvailabilityService", "BookingService"]
