"""
Domain-specific exception hierarchy for the slotbook application.
"""


class SlotbookError(Exception):
    """Base class for all application-level errors."""


class ValidationError(SlotbookError):
    """Raised when a rule, range or requested slot is not acceptable."""


class InvalidRangeError(ValidationError):
    """Raised when a time window does not start before it ends."""


class NotFoundError(SlotbookError):
    """Raised when a rule or booking id does not exist for the caller."""


class ConflictError(SlotbookError):
    """Raised when a slot has already been taken by another booking."""


class AlreadyCancelledError(ConflictError):
    """Raised when cancelling a booking that is already cancelled."""
