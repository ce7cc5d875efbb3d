"""Tests for FeedSink increments, subscriber fan-out and Redis publishing."""

from unittest.mock import AsyncMock

import orjson

from rtbridge.core.broadcaster import CHANNELS, VEHICLE_POSITIONS, Broadcaster, FeedSink
from rtbridge.schemas.feed import (
    FeedEntity,
    IncrementalUpdate,
    Position,
    VehicleDescriptor,
    VehiclePosition,
)


def entity(entity_id: str, lat: float = 39.95) -> FeedEntity:
    return FeedEntity(
        id=entity_id,
        vehicle=VehiclePosition(
            vehicle=VehicleDescriptor(id=entity_id, label=entity_id),
            position=Position(latitude=lat, longitude=-75.16),
            timestamp=1_709_650_000,
        ),
    )


async def test_updates_replace_and_deletions_remove():
    sink = FeedSink(VEHICLE_POSITIONS)
    await sink.handle_incremental_update(IncrementalUpdate(updated_entities=[entity("A"), entity("B")]))
    await sink.handle_incremental_update(IncrementalUpdate(
        updated_entities=[entity("A", lat=40.0)],
        deleted_entity_ids=["B", "NEVER_SEEN"],
    ))

    assert sink.entity_ids() == {"A"}
    assert sink.get("A").vehicle.position.latitude == 40.0
    assert [e.id for e in sink.snapshot().entity] == ["A"]


async def test_subscribers_receive_increment():
    sink = FeedSink(VEHICLE_POSITIONS)
    queue = sink.subscribe()

    await sink.handle_incremental_update(IncrementalUpdate(
        updated_entities=[entity("A")], deleted_entity_ids=["Z"],
    ))

    message = orjson.loads(queue.get_nowait())
    assert message["type"] == "update"
    assert message["channel"] == VEHICLE_POSITIONS
    assert [e["id"] for e in message["updated_entities"]] == ["A"]
    assert message["deleted_entity_ids"] == ["Z"]
    assert "trip" not in message["updated_entities"][0]["vehicle"]

    sink.unsubscribe(queue)
    await sink.handle_incremental_update(IncrementalUpdate(updated_entities=[entity("B")]))
    assert queue.empty()


async def test_empty_update_is_not_published():
    redis = AsyncMock()
    sink = FeedSink(VEHICLE_POSITIONS, redis=redis)
    queue = sink.subscribe()

    await sink.handle_incremental_update(IncrementalUpdate())

    assert queue.empty()
    redis.publish.assert_not_called()


async def test_publishes_increment_and_state_to_redis():
    redis = AsyncMock()
    sink = FeedSink(VEHICLE_POSITIONS, redis=redis)

    await sink.handle_incremental_update(IncrementalUpdate(updated_entities=[entity("A")]))

    key, state = redis.set.call_args.args
    assert key == "rtbridge:vehicle_positions:state"
    assert [e["id"] for e in orjson.loads(state)["entity"]] == ["A"]

    channel, payload = redis.publish.call_args.args
    assert channel == "rtbridge:vehicle_positions"
    assert orjson.loads(payload)["updated_entities"][0]["id"] == "A"


async def test_redis_failure_does_not_block_local_state():
    redis = AsyncMock()
    redis.publish.side_effect = ConnectionError("redis down")
    sink = FeedSink(VEHICLE_POSITIONS, redis=redis)
    queue = sink.subscribe()

    await sink.handle_incremental_update(IncrementalUpdate(updated_entities=[entity("A")]))

    assert sink.entity_ids() == {"A"}
    assert not queue.empty()


async def test_broadcaster_without_redis_url():
    broadcaster = Broadcaster()
    await broadcaster.connect()
    assert set(broadcaster.sinks) == set(CHANNELS)
    assert broadcaster.sink(VEHICLE_POSITIONS).channel == VEHICLE_POSITIONS
    await broadcaster.close()
