"""Schedule builders for tests.

The test network lies on the equator, where one degree of longitude is
111,320m, so stop positions can be written directly in meters.
"""

import datetime
from zoneinfo import ZoneInfo

from rtbridge.core.schedule import (
    Agency,
    CalendarServiceIndex,
    Route,
    ScheduleIndex,
    ServiceCalendar,
    ShapePoint,
    Stop,
    StopTime,
    Trip,
)

TZ = ZoneInfo("America/New_York")
M_PER_DEG = 111_320.0
EVERY_DAY = (True, True, True, True, True, True, True)
SERVICE_DAY = datetime.date(2024, 3, 5)  # a Tuesday, no DST change


def lon_at(meters: float) -> float:
    return meters / M_PER_DEG


def local(day: datetime.date, seconds: int) -> datetime.datetime:
    """Instant `seconds` after local midnight of `day`."""
    midnight = datetime.datetime(day.year, day.month, day.day, tzinfo=TZ)
    return midnight.astimezone(datetime.timezone.utc) + datetime.timedelta(seconds=seconds)


def make_trip(
    trip_id: str,
    times: list[int],
    block_id: str | None = "B1",
    service_id: str = "WEEKDAY",
    stop_ids: list[str] | None = None,
    shape_id: str | None = "S1",
) -> Trip:
    stop_ids = stop_ids or [f"STOP{i}" for i in range(len(times))]
    return Trip(
        trip_id=trip_id,
        route_id="R1",
        service_id=service_id,
        block_id=block_id,
        shape_id=shape_id,
        stop_times=tuple(
            StopTime(stop_id=sid, stop_sequence=i + 1, arrival_time=t, departure_time=t)
            for i, (sid, t) in enumerate(zip(stop_ids, times))
        ),
    )


def default_stops() -> list[Stop]:
    return [
        Stop(stop_id="STOP0", name="Alpha", lat=0.0, lon=lon_at(0)),
        Stop(stop_id="STOP1", name="Beta", lat=0.0, lon=lon_at(500)),
        Stop(stop_id="STOP2", name="Gamma", lat=0.0, lon=lon_at(1000)),
    ]


def straight_shape(shape_id: str = "S1", length_m: float = 1000) -> list[ShapePoint]:
    return [
        ShapePoint(shape_id=shape_id, sequence=i, lat=0.0, lon=lon_at(m))
        for i, m in enumerate([0, length_m / 2, length_m])
    ]


def make_index(
    trips: list[Trip],
    calendars: list[ServiceCalendar] | None = None,
    exceptions: list[tuple[str, datetime.date, int]] | None = None,
    stops: list[Stop] | None = None,
    shape: list[ShapePoint] | None = None,
) -> ScheduleIndex:
    if calendars is None:
        calendars = [ServiceCalendar(
            "WEEKDAY", EVERY_DAY, datetime.date(2024, 1, 1), datetime.date(2024, 12, 31),
        )]
    index = ScheduleIndex(calendar=CalendarServiceIndex(calendars, exceptions))
    index.agencies["SEPTA"] = Agency(agency_id="SEPTA", timezone="America/New_York")
    index.routes["R1"] = Route(route_id="R1", agency_id="SEPTA", short_name="1")
    for s in stops if stops is not None else default_stops():
        index.stops[s.stop_id] = s
    index.add_shape(shape if shape is not None else straight_shape())
    for t in trips:
        index.add_trip(t)
    return index
