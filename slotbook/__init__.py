"""
Slotbook - weekly availability rules, bookable slots and bookings.
"""

__version__ = "0.1.0"
