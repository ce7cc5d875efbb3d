"""Feed entities, shaped after the GTFS-realtime message types."""

from pydantic import BaseModel


class TripDescriptor(BaseModel):
    trip_id: str
    route_id: str
    start_date: str  # YYYYMMDD service date


class VehicleDescriptor(BaseModel):
    id: str
    label: str | None = None


class Position(BaseModel):
    latitude: float
    longitude: float


class VehiclePosition(BaseModel):
    trip: TripDescriptor | None = None
    vehicle: VehicleDescriptor
    position: Position
    timestamp: int  # POSIX seconds


class StopTimeEvent(BaseModel):
    delay: int  # seconds, positive = late


class StopTimeUpdate(BaseModel):
    stop_id: str
    stop_sequence: int
    arrival: StopTimeEvent | None = None
    departure: StopTimeEvent | None = None


class TripUpdate(BaseModel):
    trip: TripDescriptor
    vehicle: VehicleDescriptor
    timestamp: int
    stop_time_update: list[StopTimeUpdate] = []


class FeedEntity(BaseModel):
    id: str
    vehicle: VehiclePosition | None = None
    trip_update: TripUpdate | None = None


class IncrementalUpdate(BaseModel):
    updated_entities: list[FeedEntity] = []
    deleted_entity_ids: list[str] = []

    def is_empty(self) -> bool:
        return not self.updated_entities and not self.deleted_entity_ids


class FeedHeader(BaseModel):
    gtfs_realtime_version: str = "2.0"
    incrementality: str = "FULL_DATASET"
    timestamp: int


class FeedMessage(BaseModel):
    header: FeedHeader
    entity: list[FeedEntity]
