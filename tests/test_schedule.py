"""Tests for the in-memory schedule index."""

import datetime

import pytest

from rtbridge.core.schedule import (
    CalendarServiceIndex,
    ScheduleDataError,
    ServiceCalendar,
    StopTime,
    Trip,
    parse_gtfs_date,
    parse_gtfs_time,
    service_date_origin,
)

from schedule_builders import TZ, make_index, make_trip

WEEKDAYS_ONLY = (True, True, True, True, True, False, False)


def test_parse_gtfs_time():
    assert parse_gtfs_time("08:00:00") == 28_800
    assert parse_gtfs_time("25:10:00") == 90_600
    with pytest.raises(ValueError):
        parse_gtfs_time("8:00")


def test_parse_gtfs_date():
    assert parse_gtfs_date("20240305") == datetime.date(2024, 3, 5)


def test_calendar_weekly_pattern_and_exceptions():
    calendar = CalendarServiceIndex(
        calendars=[ServiceCalendar("WK", WEEKDAYS_ONLY, datetime.date(2024, 1, 1), datetime.date(2024, 12, 31))],
        exceptions=[
            ("WK", datetime.date(2024, 7, 4), 2),
            ("HOLIDAY", datetime.date(2024, 7, 4), 1),
        ],
    )
    assert calendar.service_ids_for_date(datetime.date(2024, 3, 5)) == {"WK"}
    assert calendar.service_ids_for_date(datetime.date(2024, 3, 9)) == frozenset()  # Saturday
    assert calendar.service_ids_for_date(datetime.date(2024, 7, 4)) == {"HOLIDAY"}
    assert calendar.service_ids_for_date(datetime.date(2025, 3, 5)) == frozenset()


def test_service_date_origin_is_local_midnight_on_normal_days():
    origin = service_date_origin(datetime.date(2024, 3, 5), TZ)
    assert origin == datetime.datetime(2024, 3, 5, 5, 0, tzinfo=datetime.timezone.utc)


def test_service_date_origin_on_dst_change_is_noon_minus_twelve_hours():
    # Clocks spring forward on 2024-03-10: noon is 16:00Z
    origin = service_date_origin(datetime.date(2024, 3, 10), TZ)
    assert origin == datetime.datetime(2024, 3, 10, 4, 0, tzinfo=datetime.timezone.utc)


def test_trips_by_block_and_max_stop_time():
    index = make_index([
        make_trip("T1", [28_800, 29_400, 30_000]),
        make_trip("T2", [82_800, 86_400, 90_000]),
        make_trip("T3", [1_000, 2_000, 3_000], block_id="B2"),
    ])
    assert [t.trip_id for t in index.trips_for_block("B1")] == ["T1", "T2"]
    assert index.trips_for_block("B9") == []
    assert index.max_stop_time() == 90_000
    assert str(index.timezone_for_trip(index.trip("T1"))) == "America/New_York"


def test_decreasing_offsets_rejected():
    index = make_index([])
    trip = Trip(
        trip_id="BAD", route_id="R1", service_id="WEEKDAY", block_id="B1",
        stop_times=(StopTime("STOP0", 1, 600, 600), StopTime("STOP1", 2, 300, 300)),
    )
    with pytest.raises(ScheduleDataError):
        index.add_trip(trip)


def test_non_increasing_sequence_rejected():
    index = make_index([])
    trip = Trip(
        trip_id="BAD", route_id="R1", service_id="WEEKDAY",
        stop_times=(StopTime("STOP0", 2, 0, 0), StopTime("STOP1", 2, 300, 300)),
    )
    with pytest.raises(ScheduleDataError):
        index.add_trip(trip)


def test_unknown_agency_falls_back_to_first():
    index = make_index([make_trip("T1", [0, 60, 120])])
    orphan = Trip(trip_id="X", route_id="MISSING", service_id="WEEKDAY", stop_times=(StopTime("STOP0", 1, 0, 0),))
    assert str(index.timezone_for_trip(orphan)) == "America/New_York"
