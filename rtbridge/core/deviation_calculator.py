"""Schedule deviation by linear interpolation between placed stops."""

import datetime
import logging
from zoneinfo import ZoneInfo

from rtbridge.core.route_projector import GeometryIndexError, RouteIndex
from rtbridge.core.schedule import StopTime, service_date_origin

logger = logging.getLogger(__name__)


def interpolate_time(
    first_position: float,
    second_position: float,
    first_time: int,
    second_time: int,
    probe: float,
) -> float:
    if second_position == first_position:
        return float(first_time)
    fraction = (probe - first_position) / (second_position - first_position)
    return first_time + fraction * (second_time - first_time)


class DeviationCalculator:
    """Compares where a vehicle is with where the schedule says it should be.

    Expected time at a position is interpolated linearly between the departure
    of the stop behind and the arrival of the stop ahead; dwell time and speed
    changes are ignored.
    """

    def expected_time(self, route_index: RouteIndex, probe: float) -> float:
        """Scheduled offset (seconds from service-date origin) at distance probe."""
        if not len(route_index):
            raise GeometryIndexError(f"Trip {route_index.trip_id} has no stops placed on its path")

        prev_entry = route_index.floor(probe)
        next_entry = route_index.ceiling(probe)
        # Before the first or after the last stop: both sides are the same stop
        if prev_entry is None:
            prev_entry = next_entry
        elif next_entry is None:
            next_entry = prev_entry

        prev_position, prev_stop = prev_entry
        next_position, next_stop = next_entry

        if prev_position == next_position:
            return float(_collapsed_time(prev_stop, probe < prev_position))

        return interpolate_time(
            prev_position, next_position,
            prev_stop.departure_time, next_stop.arrival_time,
            probe,
        )

    def compute_deviation(
        self,
        route_index: RouteIndex,
        lat: float,
        lon: float,
        when: datetime.datetime,
        service_date: datetime.date,
        tz: ZoneInfo,
    ) -> int:
        """Return expected minus actual seconds for a vehicle at (lat, lon) at `when`."""
        probe = route_index.path.project(lat, lon)
        expected = self.expected_time(route_index, probe)
        actual = (when - service_date_origin(service_date, tz)).total_seconds()
        deviation = round(expected - actual)
        logger.debug(
            "Trip %s: probe=%.1fm expected=%.0fs actual=%.0fs deviation=%ds",
            route_index.trip_id, probe, expected, actual, deviation,
        )
        return deviation

    def schedule_delay(
        self,
        route_index: RouteIndex,
        lat: float,
        lon: float,
        when: datetime.datetime,
        service_date: datetime.date,
        tz: ZoneInfo,
    ) -> tuple[StopTime, int]:
        """Next stop ahead of the vehicle and its delay (positive = late)."""
        deviation = self.compute_deviation(route_index, lat, lon, when, service_date, tz)
        next_stop = route_index.next_stop_time(route_index.path.project(lat, lon))
        return next_stop, -deviation


def _collapsed_time(stop_time: StopTime, approaching: bool) -> int:
    """A vehicle exactly at a stop reads against its arrival, so dwelling there counts as late."""
    # Not yet at the stop: it is the time the vehicle should leave from there
    if approaching:
        return stop_time.departure_time
    return stop_time.arrival_time
