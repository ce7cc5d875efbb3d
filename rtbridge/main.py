"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rtbridge.api import diagnostics, feeds, ws
from rtbridge.config import settings
from rtbridge.core.broadcaster import TRIP_UPDATES, VEHICLE_POSITIONS, Broadcaster
from rtbridge.core.feed_orchestrator import FeedOrchestrator
from rtbridge.core.schedule_loader import load_schedule_index
from rtbridge.core.scheduler import create_scheduler
from rtbridge.core.transitview_client import TransitViewClient
from rtbridge.db.session import create_session_factory

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("Starting GTFS-realtime service")

    # Static schedules are required; a failure here aborts startup
    bus_engine, bus_sessions = create_session_factory(settings.bus_schedule_database_url)
    rail_engine, rail_sessions = create_session_factory(settings.rail_schedule_database_url)
    try:
        bus_schedule = await load_schedule_index(bus_sessions, "bus")
        rail_schedule = await load_schedule_index(rail_sessions, "rail")
    finally:
        await bus_engine.dispose()
        await rail_engine.dispose()

    client = TransitViewClient()
    broadcaster = Broadcaster(settings.redis_url)
    await broadcaster.connect()

    orchestrator = FeedOrchestrator(
        client,
        bus_schedule,
        rail_schedule,
        positions_sink=broadcaster.sink(VEHICLE_POSITIONS),
        trip_updates_sink=broadcaster.sink(TRIP_UPDATES),
        expire_after_seconds=settings.expire_after_seconds,
        max_lookback_days=settings.max_lookback_days,
        bus_trip_updates=settings.bus_trip_updates,
        train_delay_source=settings.train_delay_source,
    )

    # Wire up API modules
    feeds.broadcaster = broadcaster
    ws.broadcaster = broadcaster
    diagnostics.orchestrator = orchestrator

    scheduler = create_scheduler(orchestrator)
    scheduler.start()
    logger.info(
        "GTFS-realtime service started - buses every %ds, trains every %ds",
        settings.bus_refresh_interval_seconds, settings.rail_refresh_interval_seconds,
    )

    yield

    # Shutdown: in-flight and pending jobs are dropped, not drained
    logger.info("Stopping GTFS-realtime service")
    scheduler.shutdown(wait=False)
    await client.close()
    await broadcaster.close()


app = FastAPI(
    title="SEPTA GTFS-realtime bridge",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(feeds.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
