"""Current feed contents, one endpoint per channel."""

from fastapi import APIRouter, HTTPException

from rtbridge.core.broadcaster import TRIP_UPDATES, VEHICLE_POSITIONS
from rtbridge.schemas.feed import FeedMessage

router = APIRouter(prefix="/api/feeds", tags=["feeds"])

# Will be set by main.py
broadcaster = None


def _snapshot(channel: str) -> FeedMessage:
    if broadcaster is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return broadcaster.sink(channel).snapshot()


@router.get("/vehicle-positions", response_model=FeedMessage, response_model_exclude_none=True)
async def vehicle_positions():
    """All live vehicle positions."""
    return _snapshot(VEHICLE_POSITIONS)


@router.get("/trip-updates", response_model=FeedMessage, response_model_exclude_none=True)
async def trip_updates():
    """All live trip updates."""
    return _snapshot(TRIP_UPDATES)
