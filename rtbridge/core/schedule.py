"""In-memory, read-only view of a static GTFS schedule.

The index is loaded once at startup (see schedule_loader) and never mutated
afterwards. Stop-time offsets are seconds from the service-date origin and may
exceed 24h for trips that run past midnight.
"""

import datetime
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo

DAY_SECONDS = 86_400


class ScheduleDataError(ValueError):
    """Static schedule data violates an ordering invariant."""


def parse_gtfs_time(raw: str) -> int:
    """Parse 'HH:MM:SS' (hours may exceed 23) to seconds past the service-date origin."""
    parts = raw.strip().split(":")
    if len(parts) != 3:
        raise ValueError(f"Invalid GTFS time {raw!r}")
    h, m, s = (int(p) for p in parts)
    return h * 3600 + m * 60 + s


def parse_gtfs_date(raw: str) -> datetime.date:
    """Parse a GTFS 'YYYYMMDD' date."""
    return datetime.datetime.strptime(raw.strip(), "%Y%m%d").date()


def format_gtfs_date(day: datetime.date) -> str:
    return day.strftime("%Y%m%d")


def service_date_origin(day: datetime.date, tz: ZoneInfo) -> datetime.datetime:
    """Origin of stop-time offsets for a service date: noon local time minus 12h.

    Equal to local midnight except on days with a DST transition.
    """
    noon = datetime.datetime(day.year, day.month, day.day, 12, tzinfo=tz)
    return noon.astimezone(datetime.timezone.utc) - datetime.timedelta(hours=12)


@dataclass(frozen=True)
class Agency:
    agency_id: str
    timezone: str


@dataclass(frozen=True)
class Route:
    route_id: str
    agency_id: str | None = None
    short_name: str = ""


@dataclass(frozen=True)
class Stop:
    stop_id: str
    name: str
    lat: float
    lon: float


@dataclass(frozen=True)
class StopTime:
    stop_id: str
    stop_sequence: int
    arrival_time: int
    departure_time: int


@dataclass(frozen=True)
class ShapePoint:
    shape_id: str
    sequence: int
    lat: float
    lon: float


@dataclass(frozen=True)
class Trip:
    trip_id: str
    route_id: str
    service_id: str
    block_id: str | None = None
    shape_id: str | None = None
    stop_times: tuple[StopTime, ...] = ()

    @property
    def start_time(self) -> int:
        return self.stop_times[0].arrival_time

    @property
    def end_time(self) -> int:
        return self.stop_times[-1].departure_time


@dataclass(frozen=True)
class ServiceCalendar:
    service_id: str
    days: tuple[bool, bool, bool, bool, bool, bool, bool]  # monday..sunday
    start_date: datetime.date
    end_date: datetime.date

    def is_active(self, day: datetime.date) -> bool:
        return self.start_date <= day <= self.end_date and self.days[day.weekday()]


class CalendarServiceIndex:
    """Maps a service date to the set of service ids running on it."""

    ADDED = 1
    REMOVED = 2

    def __init__(
        self,
        calendars: list[ServiceCalendar] | None = None,
        exceptions: list[tuple[str, datetime.date, int]] | None = None,
    ) -> None:
        self._calendars = list(calendars or [])
        # date -> {service_id -> exception_type}
        self._exceptions: dict[datetime.date, dict[str, int]] = {}
        for service_id, day, exception_type in exceptions or []:
            self._exceptions.setdefault(day, {})[service_id] = exception_type
        self._by_date: dict[datetime.date, frozenset[str]] = {}

    def service_ids_for_date(self, day: datetime.date) -> frozenset[str]:
        cached = self._by_date.get(day)
        if cached is not None:
            return cached

        active = {c.service_id for c in self._calendars if c.is_active(day)}
        for service_id, exception_type in self._exceptions.get(day, {}).items():
            if exception_type == self.ADDED:
                active.add(service_id)
            elif exception_type == self.REMOVED:
                active.discard(service_id)

        result = frozenset(active)
        self._by_date[day] = result
        return result


@dataclass
class ScheduleIndex:
    """Queryable static schedule: trips, stop-times, shapes, calendars, timezones."""

    agencies: dict[str, Agency] = field(default_factory=dict)
    routes: dict[str, Route] = field(default_factory=dict)
    stops: dict[str, Stop] = field(default_factory=dict)
    trips: dict[str, Trip] = field(default_factory=dict)
    shapes: dict[str, list[ShapePoint]] = field(default_factory=dict)
    calendar: CalendarServiceIndex = field(default_factory=CalendarServiceIndex)
    _by_block: dict[str, list[Trip]] = field(default_factory=dict, repr=False)
    _max_stop_time: int = field(default=-1, repr=False)

    def add_trip(self, trip: Trip) -> None:
        """Register a trip, enforcing stop-time ordering."""
        if not trip.stop_times:
            raise ScheduleDataError(f"Trip {trip.trip_id} has no stop times")
        prev: StopTime | None = None
        for st in trip.stop_times:
            if st.departure_time < st.arrival_time:
                raise ScheduleDataError(
                    f"Trip {trip.trip_id} stop {st.stop_sequence} departs before it arrives"
                )
            if prev is not None:
                if st.stop_sequence <= prev.stop_sequence:
                    raise ScheduleDataError(
                        f"Trip {trip.trip_id} stop sequence not increasing at {st.stop_sequence}"
                    )
                if st.arrival_time < prev.departure_time:
                    raise ScheduleDataError(
                        f"Trip {trip.trip_id} offsets decrease at stop {st.stop_sequence}"
                    )
            prev = st

        self.trips[trip.trip_id] = trip
        if trip.block_id:
            self._by_block.setdefault(trip.block_id, []).append(trip)
        self._max_stop_time = max(self._max_stop_time, trip.end_time)

    def add_shape(self, points: list[ShapePoint]) -> None:
        for p in points:
            self.shapes.setdefault(p.shape_id, []).append(p)
        for shape_id in {p.shape_id for p in points}:
            self.shapes[shape_id].sort(key=lambda p: p.sequence)

    def trips_for_block(self, block_id: str) -> list[Trip]:
        return self._by_block.get(block_id, [])

    def trip(self, trip_id: str) -> Trip | None:
        return self.trips.get(trip_id)

    def stop(self, stop_id: str) -> Stop | None:
        return self.stops.get(stop_id)

    def stop_times_for_trip(self, trip: Trip) -> list[StopTime]:
        return list(trip.stop_times)

    def shape_points(self, shape_id: str | None) -> list[ShapePoint]:
        if not shape_id:
            return []
        return self.shapes.get(shape_id, [])

    def service_ids_for_date(self, day: datetime.date) -> frozenset[str]:
        return self.calendar.service_ids_for_date(day)

    def timezone_for_trip(self, trip: Trip) -> ZoneInfo:
        route = self.routes.get(trip.route_id)
        agency = None
        if route is not None and route.agency_id:
            agency = self.agencies.get(route.agency_id)
        if agency is None:
            if not self.agencies:
                raise ScheduleDataError("Schedule has no agency timezone")
            agency = next(iter(self.agencies.values()))
        return ZoneInfo(agency.timezone)

    def max_stop_time(self) -> int:
        """Largest arrival/departure offset across the whole schedule."""
        return self._max_stop_time
