"""Main orchestrator: fetches vehicle snapshots, resolves trips, publishes feed increments."""

import asyncio
import datetime
import logging
from dataclasses import asdict, dataclass, field
from typing import Callable

from rtbridge.core.block_resolver import (
    ActivatedTrip,
    ActivationError,
    AmbiguousActivation,
    BlockActivationResolver,
)
from rtbridge.core.broadcaster import IncrementalSink
from rtbridge.core.deviation_calculator import DeviationCalculator
from rtbridge.core.route_projector import GeometryIndexError, RouteProjector
from rtbridge.core.schedule import ScheduleIndex, StopTime
from rtbridge.core.transitview_client import FetchError, RawBus, RawTrain, TransitViewClient
from rtbridge.schemas.feed import (
    FeedEntity,
    IncrementalUpdate,
    Position,
    StopTimeEvent,
    StopTimeUpdate,
    TripDescriptor,
    TripUpdate,
    VehicleDescriptor,
    VehiclePosition,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class FeedMode:
    """Static schedule and its derived services for one mode (bus or rail)."""

    name: str
    index: ScheduleIndex
    resolver: BlockActivationResolver = field(init=False)
    projector: RouteProjector = field(init=False)

    def __post_init__(self) -> None:
        self.resolver = BlockActivationResolver(self.index)
        self.projector = RouteProjector(self.index)


@dataclass
class CycleStats:
    vehicles: int = 0
    resolved: int = 0
    unresolved: int = 0
    failed: int = 0
    finished_at: str | None = None


class FeedOrchestrator:
    """Runs the bus refresh, rail refresh and expiry jobs.

    All three jobs take the same lock, so they never interleave even though
    they await I/O; ``_last_seen`` and the route index caches need no other
    synchronisation.
    """

    def __init__(
        self,
        client: TransitViewClient,
        bus_schedule: ScheduleIndex,
        rail_schedule: ScheduleIndex,
        positions_sink: IncrementalSink,
        trip_updates_sink: IncrementalSink,
        *,
        expire_after_seconds: int = 300,
        max_lookback_days: int | None = None,
        bus_trip_updates: bool = False,
        train_delay_source: str = "reported",
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self.client = client
        self.bus = FeedMode("bus", bus_schedule)
        self.rail = FeedMode("rail", rail_schedule)
        self.positions_sink = positions_sink
        self.trip_updates_sink = trip_updates_sink
        self.deviation_calculator = DeviationCalculator()

        self.expire_after_seconds = expire_after_seconds
        self.max_lookback_days = max_lookback_days
        self.bus_trip_updates = bus_trip_updates
        self.train_delay_source = train_delay_source
        self._clock = clock

        self._lock = asyncio.Lock()

        # entity_id -> time of last publish
        self._last_seen: dict[str, datetime.datetime] = {}
        # Entities whose latest publish included a trip update
        self._with_trip_update: set[str] = set()

        self._stats: dict[str, CycleStats] = {}

    # ------------------------------------------------------------------
    # Periodic jobs

    async def refresh_buses(self) -> None:
        """Single bus cycle: fetch, resolve, publish."""
        async with self._lock:
            try:
                logger.info("Refreshing buses")
                buses = await self.client.fetch_buses()
                await self._run_cycle(self.bus, buses, self._process_bus, lambda b: b.label)
            except FetchError as e:
                logger.warning("Bus refresh aborted: %s", e)
            except Exception:
                logger.exception("Error in bus refresh cycle")

    async def refresh_trains(self) -> None:
        """Single rail cycle: fetch, resolve, publish."""
        async with self._lock:
            try:
                logger.info("Refreshing trains")
                trains = await self.client.fetch_trains()
                await self._run_cycle(self.rail, trains, self._process_train, lambda t: t.train_number)
            except FetchError as e:
                logger.warning("Train refresh aborted: %s", e)
            except Exception:
                logger.exception("Error in train refresh cycle")

    async def expire_stale(self) -> None:
        """Delete every entity not published within the expiry timeout."""
        async with self._lock:
            try:
                now = self._clock()
                expired = [
                    entity_id for entity_id, last_seen in self._last_seen.items()
                    if (now - last_seen).total_seconds() > self.expire_after_seconds
                ]
                if not expired:
                    return

                update = IncrementalUpdate(deleted_entity_ids=expired)
                await self.trip_updates_sink.handle_incremental_update(update)
                await self.positions_sink.handle_incremental_update(update)

                for entity_id in expired:
                    del self._last_seen[entity_id]
                    self._with_trip_update.discard(entity_id)
                logger.info("Expired %d stale entities", len(expired))
            except Exception:
                logger.exception("Error in expiry sweep")

    # ------------------------------------------------------------------

    async def _run_cycle(self, mode: FeedMode, vehicles: list, process, describe) -> None:
        now = self._clock()
        positions = IncrementalUpdate()
        trip_updates = IncrementalUpdate()
        stats = CycleStats(vehicles=len(vehicles))

        for vehicle in vehicles:
            logger.debug("Processing %s %s", mode.name, describe(vehicle))
            try:
                process(vehicle, now, positions, trip_updates, stats)
            except Exception:
                stats.failed += 1
                logger.warning("Exception while processing %s %s", mode.name, describe(vehicle), exc_info=True)

        await self.trip_updates_sink.handle_incremental_update(trip_updates)
        await self.positions_sink.handle_incremental_update(positions)

        stats.finished_at = now.isoformat()
        self._stats[mode.name] = stats
        logger.info(
            "%s cycle: %d vehicles, %d resolved, %d unresolved, %d failed",
            mode.name, stats.vehicles, stats.resolved, stats.unresolved, stats.failed,
        )

    def _activate(self, mode: FeedMode, block_id: str, when: datetime.datetime, stats: CycleStats) -> ActivatedTrip | None:
        try:
            activated = mode.resolver.resolve(block_id, when, self.max_lookback_days)
        except AmbiguousActivation as e:
            stats.unresolved += 1
            logger.warning("%s", e)
            return None
        except ActivationError as e:
            stats.unresolved += 1
            logger.debug("%s", e)
            return None
        stats.resolved += 1
        return activated

    @staticmethod
    def _trip_descriptor(activated: ActivatedTrip) -> TripDescriptor:
        return TripDescriptor(
            trip_id=activated.trip.trip_id,
            route_id=activated.trip.route_id,
            start_date=activated.start_date,
        )

    def _computed_delay(
        self, mode: FeedMode, activated: ActivatedTrip, lat: float, lon: float, when: datetime.datetime,
    ) -> tuple[StopTime, int] | None:
        try:
            route_index = mode.projector.build_index(activated.trip)
            return self.deviation_calculator.schedule_delay(
                route_index, lat, lon, when,
                activated.service_date, mode.index.timezone_for_trip(activated.trip),
            )
        except GeometryIndexError as e:
            logger.debug("No schedule deviation for trip %s: %s", activated.trip.trip_id, e)
            return None

    def _publish_entity(
        self,
        entity_id: str,
        now: datetime.datetime,
        position: VehiclePosition,
        trip_update: TripUpdate | None,
        positions: IncrementalUpdate,
        trip_updates: IncrementalUpdate,
    ) -> None:
        positions.updated_entities.append(FeedEntity(id=entity_id, vehicle=position))
        if trip_update is not None:
            trip_updates.updated_entities.append(FeedEntity(id=entity_id, trip_update=trip_update))
            self._with_trip_update.add(entity_id)
        elif entity_id in self._with_trip_update:
            trip_updates.deleted_entity_ids.append(entity_id)
            self._with_trip_update.discard(entity_id)
        self._last_seen[entity_id] = now

    def _process_bus(
        self,
        bus: RawBus,
        now: datetime.datetime,
        positions: IncrementalUpdate,
        trip_updates: IncrementalUpdate,
        stats: CycleStats,
    ) -> None:
        # Offset is the age of the report: the position was observed that long ago
        observed = now - datetime.timedelta(minutes=bus.offset_minutes)
        activated = self._activate(self.bus, bus.block_id, observed, stats)

        vehicle = VehicleDescriptor(id=bus.vehicle_id, label=bus.label)
        trip = self._trip_descriptor(activated) if activated else None
        position = VehiclePosition(
            trip=trip,
            vehicle=vehicle,
            position=Position(latitude=bus.lat, longitude=bus.lon),
            timestamp=int(observed.timestamp()),
        )

        trip_update = None
        if activated and self.bus_trip_updates:
            computed = self._computed_delay(self.bus, activated, bus.lat, bus.lon, observed)
            if computed is not None:
                stop_time, delay = computed
                trip_update = TripUpdate(
                    trip=trip,
                    vehicle=vehicle,
                    timestamp=int(observed.timestamp()),
                    stop_time_update=[StopTimeUpdate(
                        stop_id=stop_time.stop_id,
                        stop_sequence=stop_time.stop_sequence,
                        arrival=StopTimeEvent(delay=delay),
                    )],
                )

        self._publish_entity(f"BUS{bus.vehicle_id}", now, position, trip_update, positions, trip_updates)

    def _next_stop_for_train(self, activated: ActivatedTrip, next_stop_name: str) -> StopTime:
        """Stop-time whose stop name matches TrainView's next stop, else the trip's first."""
        wanted = next_stop_name.strip().casefold()
        if wanted:
            for st in activated.trip.stop_times:
                stop = self.rail.index.stop(st.stop_id)
                if stop is not None and stop.name.strip().casefold() == wanted:
                    return st
        return activated.trip.stop_times[0]

    def _process_train(
        self,
        train: RawTrain,
        now: datetime.datetime,
        positions: IncrementalUpdate,
        trip_updates: IncrementalUpdate,
        stats: CycleStats,
    ) -> None:
        # A late train is running the part of its trip scheduled `late` minutes ago
        observed = now
        if train.lateness_known:
            observed = now - datetime.timedelta(minutes=train.late_minutes)
        activated = self._activate(self.rail, train.train_number, observed, stats)

        vehicle = VehicleDescriptor(id=train.train_number, label=train.train_number)
        trip = self._trip_descriptor(activated) if activated else None
        position = VehiclePosition(
            trip=trip,
            vehicle=vehicle,
            position=Position(latitude=train.lat, longitude=train.lon),
            timestamp=int(now.timestamp()),
        )

        trip_update = None
        if activated and train.lateness_known:
            stop_time = self._next_stop_for_train(activated, train.next_stop)
            delay = train.late_minutes * 60
            if self.train_delay_source == "computed":
                computed = self._computed_delay(self.rail, activated, train.lat, train.lon, now)
                if computed is not None:
                    stop_time, delay = computed
            trip_update = TripUpdate(
                trip=trip,
                vehicle=vehicle,
                timestamp=int(now.timestamp()),
                stop_time_update=[StopTimeUpdate(
                    stop_id=stop_time.stop_id,
                    stop_sequence=stop_time.stop_sequence,
                    departure=StopTimeEvent(delay=delay),
                )],
            )

        self._publish_entity(f"TRAIN{train.train_number}", now, position, trip_update, positions, trip_updates)

    # ------------------------------------------------------------------

    def tracked_entity_ids(self) -> dict[str, datetime.datetime]:
        return dict(self._last_seen)

    def get_diagnostics(self) -> dict:
        """Counters of the last cycles and cache sizes."""
        return {
            "tracked_entities": len(self._last_seen),
            "entities_with_trip_update": len(self._with_trip_update),
            "cycles": {name: asdict(stats) for name, stats in self._stats.items()},
            "route_index_cache": {
                "bus": len(self.bus.projector.cached_trip_ids()),
                "rail": len(self.rail.projector.cached_trip_ids()),
            },
            "route_index_failures": {
                "bus": len(self.bus.projector.failed_trip_ids()),
                "rail": len(self.rail.projector.failed_trip_ids()),
            },
            "max_lookback_days": {
                "bus": self.max_lookback_days if self.max_lookback_days is not None else self.bus.resolver.auto_max_lookback,
                "rail": self.max_lookback_days if self.max_lookback_days is not None else self.rail.resolver.auto_max_lookback,
            },
        }
