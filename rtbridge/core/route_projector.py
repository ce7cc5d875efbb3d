"""Place a trip's stops on its shape using Shapely linear referencing."""

import bisect
import logging
import math
from dataclasses import dataclass, field

from shapely.geometry import LineString, Point
from shapely.ops import substring

from rtbridge.core.schedule import ScheduleIndex, StopTime, Trip

logger = logging.getLogger(__name__)

# Meters per degree of latitude; longitude is scaled by cos(latitude) per path
LAT_M_PER_DEG = 111_320.0


class GeometryIndexError(Exception):
    """A path cannot be built, or a stop cannot be placed on it in order."""


class LengthIndexedPath:
    """A polyline parameterised by distance in meters from its first point.

    Coordinates are projected onto a local flat-earth plane anchored at the
    first point, which is accurate enough over the length of a transit route.
    """

    def __init__(self, coords: list[tuple[float, float]]) -> None:
        """coords = [(lat, lon), ...]; consecutive duplicates are dropped."""
        points: list[tuple[float, float]] = []
        for c in coords:
            if not points or points[-1] != c:
                points.append(c)
        if len(points) < 2:
            raise GeometryIndexError(f"Path needs at least 2 distinct points, got {len(points)}")

        self._lat0, self._lon0 = points[0]
        self._lon_m = LAT_M_PER_DEG * math.cos(math.radians(self._lat0))
        # Shapely uses (x, y) = (east, north)
        self.line = LineString([self._to_xy(lat, lon) for lat, lon in points])

    @property
    def length(self) -> float:
        return self.line.length

    def _to_xy(self, lat: float, lon: float) -> tuple[float, float]:
        return ((lon - self._lon0) * self._lon_m, (lat - self._lat0) * LAT_M_PER_DEG)

    def project(self, lat: float, lon: float) -> float:
        """Distance along the path of the point nearest to (lat, lon)."""
        return self.line.project(Point(self._to_xy(lat, lon)))

    def project_after(self, lat: float, lon: float, min_distance: float) -> float | None:
        """Like project(), restricted to the part of the path at or after min_distance.

        Returns None when nothing of the path remains past min_distance.
        """
        if min_distance <= 0:
            return self.project(lat, lon)
        if min_distance >= self.length:
            return None
        tail = substring(self.line, min_distance, self.length)
        if not isinstance(tail, LineString):
            return None
        return min_distance + tail.project(Point(self._to_xy(lat, lon)))

    def interpolate(self, distance: float) -> tuple[float, float]:
        """Return (lat, lon) at the given distance along the path."""
        pt = self.line.interpolate(max(0.0, min(self.length, distance)))
        return (pt.y / LAT_M_PER_DEG + self._lat0, pt.x / self._lon_m + self._lon0)


@dataclass
class RouteIndex:
    """Stops of one trip keyed by their distance along the trip's path.

    ``distances`` is strictly increasing and parallel to ``stop_times``.
    """

    trip_id: str
    path: LengthIndexedPath
    distances: list[float] = field(default_factory=list)
    stop_times: list[StopTime] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.distances)

    def add(self, distance: float, stop_time: StopTime) -> None:
        if self.distances and distance <= self.distances[-1]:
            raise GeometryIndexError(
                f"Trip {self.trip_id} stop {stop_time.stop_sequence} at {distance:.1f}m "
                f"does not advance past {self.distances[-1]:.1f}m"
            )
        self.distances.append(distance)
        self.stop_times.append(stop_time)

    def floor(self, distance: float) -> tuple[float, StopTime] | None:
        """Last entry at or before distance."""
        i = bisect.bisect_right(self.distances, distance) - 1
        if i < 0:
            return None
        return self.distances[i], self.stop_times[i]

    def ceiling(self, distance: float) -> tuple[float, StopTime] | None:
        """First entry at or after distance."""
        i = bisect.bisect_left(self.distances, distance)
        if i >= len(self.distances):
            return None
        return self.distances[i], self.stop_times[i]

    def next_stop_time(self, distance: float) -> StopTime | None:
        """First stop strictly ahead of distance, or the last stop when past the end."""
        i = bisect.bisect_right(self.distances, distance)
        if i < len(self.stop_times):
            return self.stop_times[i]
        return self.stop_times[-1] if self.stop_times else None


class RouteProjector:
    """Builds RouteIndex objects from static schedule data.

    Indexes are cached per trip id on first use and never invalidated: the
    schedule they are derived from is immutable for the process lifetime.
    A trip whose path cannot be built is remembered too, and the same
    GeometryIndexError is raised again without rebuilding.
    """

    def __init__(self, index: ScheduleIndex) -> None:
        self.index = index
        # trip_id -> RouteIndex
        self._cache: dict[str, RouteIndex] = {}
        # trip_id -> why its path could not be built
        self._failed: dict[str, GeometryIndexError] = {}

    def build_index(self, trip: Trip) -> RouteIndex:
        cached = self._cache.get(trip.trip_id)
        if cached is not None:
            return cached
        failure = self._failed.get(trip.trip_id)
        if failure is not None:
            raise failure
        try:
            route_index = self._build(trip)
        except GeometryIndexError as e:
            logger.warning("Trip %s has no usable path, deviations unavailable: %s", trip.trip_id, e)
            self._failed[trip.trip_id] = e
            raise
        self._cache[trip.trip_id] = route_index
        return route_index

    def cached_trip_ids(self) -> list[str]:
        return list(self._cache)

    def failed_trip_ids(self) -> list[str]:
        return list(self._failed)

    def _path_for_trip(self, trip: Trip) -> LengthIndexedPath:
        shape = self.index.shape_points(trip.shape_id)
        if len(shape) >= 2:
            try:
                return LengthIndexedPath([(p.lat, p.lon) for p in shape])
            except GeometryIndexError:
                logger.warning("Trip %s: shape %s is degenerate, using stop-to-stop path", trip.trip_id, trip.shape_id)
        # Stop-to-stop fallback
        coords = []
        for st in trip.stop_times:
            stop = self.index.stop(st.stop_id)
            if stop is not None:
                coords.append((stop.lat, stop.lon))
        return LengthIndexedPath(coords)

    def _build(self, trip: Trip) -> RouteIndex:
        path = self._path_for_trip(trip)
        route_index = RouteIndex(trip_id=trip.trip_id, path=path)

        cursor = 0.0
        for st in sorted(trip.stop_times, key=lambda s: s.stop_sequence):
            stop = self.index.stop(st.stop_id)
            if stop is None:
                logger.warning("Trip %s: unknown stop %s, not used for timing", trip.trip_id, st.stop_id)
                continue
            try:
                cursor = self._place_stop(route_index, st, stop.lat, stop.lon, cursor)
            except GeometryIndexError as e:
                logger.warning("%s; will not be used for timing", e)

        logger.debug(
            "Trip %s: indexed %d/%d stops over %.0fm",
            trip.trip_id, len(route_index), len(trip.stop_times), path.length,
        )
        return route_index

    @staticmethod
    def _place_stop(route_index: RouteIndex, st: StopTime, lat: float, lon: float, cursor: float) -> float:
        """Add a stop at its first path position at or after cursor; return the new cursor."""
        path = route_index.path
        position = path.project_after(lat, lon, cursor)
        if position is None:
            position = path.project(lat, lon)
            if position < cursor:
                raise GeometryIndexError(
                    f"Trip {route_index.trip_id} stop {st.stop_sequence} goes backwards "
                    f"from {cursor:.1f}m to {position:.1f}m"
                )
        route_index.add(position, st)
        return position
