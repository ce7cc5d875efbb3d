"""Load a ScheduleIndex from a pre-built GTFS database."""

import logging
from collections import defaultdict

from sqlalchemy import select

from rtbridge.core.schedule import (
    Agency,
    CalendarServiceIndex,
    Route,
    ScheduleDataError,
    ScheduleIndex,
    ServiceCalendar,
    ShapePoint,
    Stop,
    StopTime,
    Trip,
    parse_gtfs_date,
    parse_gtfs_time,
)
from rtbridge.models import gtfs

logger = logging.getLogger(__name__)


def _stop_time_from_row(row: gtfs.StopTime) -> StopTime | None:
    """Convert a stop_times row; untimed rows yield None."""
    arrival = row.arrival_time or row.departure_time
    departure = row.departure_time or row.arrival_time
    if not arrival or not departure:
        return None
    return StopTime(
        stop_id=row.stop_id,
        stop_sequence=row.stop_sequence,
        arrival_time=parse_gtfs_time(arrival),
        departure_time=parse_gtfs_time(departure),
    )


async def load_schedule_index(session_factory, label: str = "schedule") -> ScheduleIndex:
    """Read every schedule table and build the in-memory index.

    Errors propagate: a schedule that cannot be loaded is fatal at startup.
    """
    async with session_factory() as session:
        agencies = (await session.execute(select(gtfs.Agency))).scalars().all()
        routes = (await session.execute(select(gtfs.Route))).scalars().all()
        stops = (await session.execute(select(gtfs.Stop))).scalars().all()
        trips = (await session.execute(select(gtfs.Trip))).scalars().all()
        stop_times = (await session.execute(
            select(gtfs.StopTime).order_by(gtfs.StopTime.trip_id, gtfs.StopTime.stop_sequence)
        )).scalars().all()
        shape_rows = (await session.execute(select(gtfs.ShapePoint))).scalars().all()
        calendars = (await session.execute(select(gtfs.Calendar))).scalars().all()
        calendar_dates = (await session.execute(select(gtfs.CalendarDate))).scalars().all()

    index = ScheduleIndex(
        calendar=CalendarServiceIndex(
            calendars=[
                ServiceCalendar(
                    service_id=c.service_id,
                    days=(
                        bool(c.monday), bool(c.tuesday), bool(c.wednesday), bool(c.thursday),
                        bool(c.friday), bool(c.saturday), bool(c.sunday),
                    ),
                    start_date=parse_gtfs_date(c.start_date),
                    end_date=parse_gtfs_date(c.end_date),
                )
                for c in calendars
            ],
            exceptions=[
                (cd.service_id, parse_gtfs_date(cd.date), cd.exception_type)
                for cd in calendar_dates
            ],
        ),
    )

    for a in agencies:
        index.agencies[a.agency_id] = Agency(agency_id=a.agency_id, timezone=a.agency_timezone)
    for r in routes:
        index.routes[r.route_id] = Route(
            route_id=r.route_id, agency_id=r.agency_id, short_name=r.route_short_name or "",
        )
    for s in stops:
        index.stops[s.stop_id] = Stop(stop_id=s.stop_id, name=s.stop_name or "", lat=s.stop_lat, lon=s.stop_lon)

    index.add_shape([
        ShapePoint(shape_id=p.shape_id, sequence=p.shape_pt_sequence, lat=p.shape_pt_lat, lon=p.shape_pt_lon)
        for p in shape_rows
    ])

    by_trip: dict[str, list[StopTime]] = defaultdict(list)
    untimed = 0
    for row in stop_times:
        st = _stop_time_from_row(row)
        if st is None:
            untimed += 1
            continue
        by_trip[row.trip_id].append(st)

    skipped = 0
    for t in trips:
        try:
            index.add_trip(Trip(
                trip_id=t.trip_id,
                route_id=t.route_id,
                service_id=t.service_id,
                block_id=t.block_id or None,
                shape_id=t.shape_id or None,
                stop_times=tuple(by_trip.get(t.trip_id, ())),
            ))
        except ScheduleDataError as e:
            skipped += 1
            logger.warning("%s: skipping trip: %s", label, e)

    logger.info(
        "%s: loaded %d trips (%d skipped, %d untimed stop times dropped), %d stops, %d shapes",
        label, len(index.trips), skipped, untimed, len(index.stops), len(index.shapes),
    )
    return index
