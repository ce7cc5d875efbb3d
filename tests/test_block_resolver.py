"""Tests for BlockActivationResolver."""

import datetime

import pytest

from rtbridge.core.block_resolver import (
    AmbiguousActivation,
    BlockActivationResolver,
    NoActivation,
)
from rtbridge.core.schedule import ServiceCalendar

from schedule_builders import EVERY_DAY, SERVICE_DAY, local, make_index, make_trip


def test_single_trip_in_window(morning_index):
    resolver = BlockActivationResolver(morning_index)

    activated = resolver.resolve("B1", local(SERVICE_DAY, 29_000))
    assert activated.trip.trip_id == "T1"
    assert activated.service_date == SERVICE_DAY
    assert activated.start_date == "20240305"


def test_window_bounds_are_inclusive(morning_index):
    resolver = BlockActivationResolver(morning_index)
    assert resolver.resolve("B1", local(SERVICE_DAY, 28_800)).trip.trip_id == "T1"
    assert resolver.resolve("B1", local(SERVICE_DAY, 30_000)).trip.trip_id == "T1"


def test_outside_window_raises(morning_index):
    resolver = BlockActivationResolver(morning_index)
    with pytest.raises(NoActivation):
        resolver.resolve("B1", local(SERVICE_DAY, 30_001))


def test_unknown_block_raises(morning_index):
    resolver = BlockActivationResolver(morning_index)
    with pytest.raises(NoActivation):
        resolver.resolve("NOPE", local(SERVICE_DAY, 29_000))


def test_overlapping_trips_are_ambiguous():
    index = make_index([
        make_trip("T1", [28_800, 29_400, 30_000]),
        make_trip("T2", [29_900, 30_500, 31_000]),
    ])
    resolver = BlockActivationResolver(index)

    with pytest.raises(AmbiguousActivation) as exc_info:
        resolver.resolve("B1", local(SERVICE_DAY, 29_950))
    assert {m.trip.trip_id for m in exc_info.value.matches} == {"T1", "T2"}


def test_consecutive_trips_pick_the_running_one():
    index = make_index([
        make_trip("T1", [28_800, 29_400, 30_000]),
        make_trip("T2", [30_600, 31_200, 31_800]),
    ])
    resolver = BlockActivationResolver(index)

    assert resolver.resolve("B1", local(SERVICE_DAY, 29_000)).trip.trip_id == "T1"
    assert resolver.resolve("B1", local(SERVICE_DAY, 31_000)).trip.trip_id == "T2"
    # Layover between the two trips
    with pytest.raises(NoActivation):
        resolver.resolve("B1", local(SERVICE_DAY, 30_300))


def test_trip_past_midnight_resolves_to_previous_service_date():
    # 23:00 -> 25:00, running only on SERVICE_DAY
    index = make_index(
        [make_trip("OWL", [82_800, 86_400, 90_000])],
        calendars=[ServiceCalendar("WEEKDAY", EVERY_DAY, SERVICE_DAY, SERVICE_DAY)],
    )
    resolver = BlockActivationResolver(index)
    next_day = SERVICE_DAY + datetime.timedelta(days=1)

    activated = resolver.resolve("B1", local(next_day, 1_800), max_lookback_days=1)
    assert activated.trip.trip_id == "OWL"
    assert activated.service_date == SERVICE_DAY

    with pytest.raises(NoActivation):
        resolver.resolve("B1", local(next_day, 1_800), max_lookback_days=0)


def test_auto_lookback_covers_overflowing_offsets():
    index = make_index(
        [make_trip("OWL", [82_800, 86_400, 90_000])],
        calendars=[ServiceCalendar("WEEKDAY", EVERY_DAY, SERVICE_DAY, SERVICE_DAY)],
    )
    resolver = BlockActivationResolver(index)
    assert resolver.auto_max_lookback == 2

    next_day = SERVICE_DAY + datetime.timedelta(days=1)
    assert resolver.resolve("B1", local(next_day, 1_800)).service_date == SERVICE_DAY


def test_auto_lookback_for_same_day_schedule(morning_index):
    assert BlockActivationResolver(morning_index).auto_max_lookback == 1


def test_service_removed_by_exception():
    index = make_index(
        [make_trip("T1", [28_800, 29_400, 30_000])],
        exceptions=[("WEEKDAY", SERVICE_DAY, 2)],
    )
    resolver = BlockActivationResolver(index)

    with pytest.raises(NoActivation):
        resolver.resolve("B1", local(SERVICE_DAY, 29_000))
    other_day = SERVICE_DAY + datetime.timedelta(days=1)
    assert resolver.resolve("B1", local(other_day, 29_000)).service_date == other_day


def test_try_resolve_returns_none_when_nothing_runs(morning_index):
    resolver = BlockActivationResolver(morning_index)
    assert resolver.try_resolve("B1", local(SERVICE_DAY, 40_000)) is None
    assert resolver.try_resolve("B1", local(SERVICE_DAY, 29_000)).trip.trip_id == "T1"
