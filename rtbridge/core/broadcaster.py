"""Per-channel feed sinks: keep the live entity set and publish increments via Redis."""

import asyncio
import logging
import time
from typing import Protocol

import orjson
import redis.asyncio as aioredis

from rtbridge.schemas.feed import FeedEntity, FeedHeader, FeedMessage, IncrementalUpdate

logger = logging.getLogger(__name__)

VEHICLE_POSITIONS = "vehicle_positions"
TRIP_UPDATES = "trip_updates"
CHANNELS = (VEHICLE_POSITIONS, TRIP_UPDATES)


class IncrementalSink(Protocol):
    async def handle_incremental_update(self, update: IncrementalUpdate) -> None: ...


class FeedSink:
    """Holds the current entities of one channel and fans out every increment.

    Increments go to the Redis channel ``rtbridge:<channel>`` and to local
    WebSocket subscriber queues; the full snapshot is kept under
    ``rtbridge:<channel>:state`` for late joiners.
    """

    def __init__(self, channel: str, redis: aioredis.Redis | None = None) -> None:
        self.channel = channel
        self._redis = redis
        self._entities: dict[str, FeedEntity] = {}
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def redis_channel(self) -> str:
        return f"rtbridge:{self.channel}"

    @property
    def state_key(self) -> str:
        return f"rtbridge:{self.channel}:state"

    def attach_redis(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    def entity_ids(self) -> set[str]:
        return set(self._entities)

    def get(self, entity_id: str) -> FeedEntity | None:
        return self._entities.get(entity_id)

    def snapshot(self) -> FeedMessage:
        """Full dataset of the channel as a feed message."""
        return FeedMessage(
            header=FeedHeader(timestamp=int(time.time())),
            entity=list(self._entities.values()),
        )

    async def handle_incremental_update(self, update: IncrementalUpdate) -> None:
        if update.is_empty():
            return
        for entity in update.updated_entities:
            self._entities[entity.id] = entity
        for entity_id in update.deleted_entity_ids:
            self._entities.pop(entity_id, None)

        payload = orjson.dumps({
            "type": "update",
            "channel": self.channel,
            **update.model_dump(exclude_none=True),
        })

        if self._redis:
            try:
                await self._redis.set(self.state_key, orjson.dumps(self.snapshot().model_dump(exclude_none=True)))
                await self._redis.publish(self.redis_channel, payload)
            except Exception:
                logger.exception("Failed to publish %s to Redis", self.channel)

        # Fan out directly to WebSocket subscribers
        dead = set()
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        self._subscribers -= dead

    def subscribe(self) -> asyncio.Queue:
        """Create a new subscriber queue for WebSocket fan-out."""
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)


class Broadcaster:
    """Owns the Redis connection and one FeedSink per channel."""

    def __init__(self, redis_url: str | None = None) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = None
        self.sinks: dict[str, FeedSink] = {name: FeedSink(name) for name in CHANNELS}

    async def connect(self) -> None:
        if not self._redis_url:
            return
        self._redis = aioredis.from_url(self._redis_url, decode_responses=False)
        for sink in self.sinks.values():
            sink.attach_redis(self._redis)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    def sink(self, channel: str) -> FeedSink:
        return self.sinks[channel]
