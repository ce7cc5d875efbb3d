import pytest

from rtbridge.core.schedule import ScheduleIndex

from schedule_builders import make_index, make_trip


@pytest.fixture
def morning_index() -> ScheduleIndex:
    """Block B1: one trip 08:00 -> 08:20 over stops at 0m, 500m and 1000m."""
    return make_index([make_trip("T1", [28_800, 29_400, 30_000])])
