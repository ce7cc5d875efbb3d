"""Resolve a block id and an observation instant to the trip instance that is running."""

import datetime
import logging
import math
from dataclasses import dataclass

from rtbridge.core.schedule import (
    DAY_SECONDS,
    ScheduleIndex,
    Trip,
    format_gtfs_date,
    service_date_origin,
)

logger = logging.getLogger(__name__)


class ActivationError(Exception):
    """A block could not be mapped to exactly one running trip."""

    def __init__(self, block_id: str, when: datetime.datetime, message: str) -> None:
        super().__init__(f"Block {block_id} at {when.isoformat()}: {message}")
        self.block_id = block_id
        self.when = when


class NoActivation(ActivationError):
    pass


class AmbiguousActivation(ActivationError):
    def __init__(self, block_id: str, when: datetime.datetime, matches: list["ActivatedTrip"]) -> None:
        described = ", ".join(f"{m.trip.trip_id}@{m.start_date}" for m in matches)
        super().__init__(block_id, when, f"{len(matches)} active trips ({described})")
        self.matches = matches


@dataclass(frozen=True)
class ActivatedTrip:
    trip: Trip
    service_date: datetime.date

    @property
    def start_date(self) -> str:
        return format_gtfs_date(self.service_date)


class BlockActivationResolver:
    """Finds the (trip, service date) a block is operating at a given instant.

    A block id alone is ambiguous around midnight, so every trip of the block
    is tested against each of the last ``max_lookback_days`` service dates:
    the trip matches when the time elapsed since that date's origin falls
    within the trip's first arrival and last departure.
    """

    def __init__(self, index: ScheduleIndex) -> None:
        self.index = index
        # Trips whose offsets run past 24h can still be live one or more days later
        self.auto_max_lookback = max(0, math.ceil(index.max_stop_time() / DAY_SECONDS))

    def resolve(
        self,
        block_id: str,
        when: datetime.datetime,
        max_lookback_days: int | None = None,
    ) -> ActivatedTrip:
        if max_lookback_days is None:
            max_lookback_days = self.auto_max_lookback

        matches: list[ActivatedTrip] = []
        for trip in self.index.trips_for_block(block_id):
            tz = self.index.timezone_for_trip(trip)
            today = when.astimezone(tz).date()

            for i in range(max_lookback_days + 1):
                shifted = today - datetime.timedelta(days=i)
                if trip.service_id not in self.index.service_ids_for_date(shifted):
                    continue
                elapsed = (when - service_date_origin(shifted, tz)).total_seconds()
                if trip.start_time <= elapsed <= trip.end_time:
                    matches.append(ActivatedTrip(trip=trip, service_date=shifted))

        if not matches:
            raise NoActivation(block_id, when, "no active trip")
        if len(matches) > 1:
            raise AmbiguousActivation(block_id, when, matches)

        logger.debug("Block %s -> trip %s on %s", block_id, matches[0].trip.trip_id, matches[0].start_date)
        return matches[0]

    def try_resolve(
        self,
        block_id: str,
        when: datetime.datetime,
        max_lookback_days: int | None = None,
    ) -> ActivatedTrip | None:
        """Like resolve(), but a block with no running trip yields None."""
        try:
            return self.resolve(block_id, when, max_lookback_days)
        except NoActivation:
            return None
