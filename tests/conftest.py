"""
Shared fixtures: every service test runs against both storage backends.
"""

import pendulum
import pytest

from slotbook.adapters.memory_store import MemoryStorage
from slotbook.adapters.sql_store import SqlStorage
from slotbook.domain.models import RuleInput
from slotbook.services.availability import AvailabilityService
from slotbook.services.booking import BookingService

USER = "user-1"

# 2024-11-25 is a Monday
MONDAY = "2024-11-25"


def utc(value: str):
    return pendulum.parse(value, tz="UTC")


def monday_rule(**overrides) -> RuleInput:
    data = dict(
        day_of_week=1,
        start_time="09:00",
        end_time="10:00",
        slot_length_minutes=30,
        available=True,
    )
    data.update(overrides)
    return RuleInput(**data)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        yield MemoryStorage()
        return

    store = SqlStorage.from_url(f"sqlite:///{tmp_path / 'slotbook.db'}")
    store.create_schema()
    yield store
    store.dispose()


@pytest.fixture
def availability(storage):
    return AvailabilityService(storage)


@pytest.fixture
def booking_service(storage, availability):
    return BookingService(storage, availability)
