"""Async client for the SEPTA TransitView (bus) and TrainView (rail) JSON feeds."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from rtbridge.config import settings

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF = [2, 4, 8]  # seconds between retries

# TrainView reports this lateness when it has no estimate
LATE_UNKNOWN = 999


class FetchError(Exception):
    """A whole vehicle snapshot could not be fetched or decoded."""


class MalformedRecordError(ValueError):
    """A single vehicle record in a snapshot could not be parsed."""


@dataclass
class RawBus:
    lat: float
    lon: float
    label: str
    vehicle_id: str
    block_id: str
    direction: str
    destination: str | None
    offset_minutes: int  # age of the report


@dataclass
class RawTrain:
    lat: float
    lon: float
    train_number: str
    service: str
    destination: str
    next_stop: str
    late_minutes: int
    source: str

    @property
    def lateness_known(self) -> bool:
        return self.late_minutes != LATE_UNKNOWN


def _required(item: dict, key: str) -> Any:
    value = item.get(key)
    if value is None:
        raise MalformedRecordError(f"missing {key!r}")
    return value


def parse_bus(item: Any) -> RawBus:
    if not isinstance(item, dict):
        raise MalformedRecordError(f"expected object, got {type(item).__name__}")
    try:
        destination = item.get("destination")
        return RawBus(
            lat=float(_required(item, "lat")),
            lon=float(_required(item, "lng")),
            label=str(_required(item, "label")),
            vehicle_id=str(_required(item, "VehicleID")),
            block_id=str(_required(item, "BlockID")),
            direction=str(_required(item, "Direction")),
            destination=str(destination) if destination is not None else None,
            offset_minutes=int(_required(item, "Offset")),
        )
    except (ValueError, TypeError) as e:
        raise MalformedRecordError(str(e)) from e


def parse_train(item: Any) -> RawTrain:
    if not isinstance(item, dict):
        raise MalformedRecordError(f"expected object, got {type(item).__name__}")
    try:
        return RawTrain(
            lat=float(_required(item, "lat")),
            lon=float(_required(item, "lon")),
            train_number=str(_required(item, "trainno")),
            service=str(_required(item, "service")),
            destination=str(_required(item, "dest")),
            next_stop=str(_required(item, "nextstop")),
            late_minutes=int(_required(item, "late")),
            source=str(_required(item, "SOURCE")),
        )
    except (ValueError, TypeError) as e:
        raise MalformedRecordError(str(e)) from e


def _only_value(obj: Any, what: str) -> Any:
    """TransitView wraps each level in a single-key object."""
    if not isinstance(obj, dict) or len(obj) != 1:
        raise FetchError(f"Unexpected TransitView {what}: expected a single-key object")
    return next(iter(obj.values()))


def parse_buses(data: Any) -> list[RawBus]:
    """Parse a TransitViewAll document: {"<key>": [{"<route>": [bus, ...]}, ...]}."""
    routes = _only_value(data, "document")
    if not isinstance(routes, list):
        raise FetchError("Unexpected TransitView document: route list missing")

    buses = []
    for route_obj in routes:
        route_buses = _only_value(route_obj, "route entry")
        if not isinstance(route_buses, list):
            raise FetchError("Unexpected TransitView route entry: bus list missing")
        for item in route_buses:
            try:
                buses.append(parse_bus(item))
            except MalformedRecordError as e:
                logger.warning("Skipping malformed bus record (%s): %s", e, item)
    return buses


def parse_trains(data: Any) -> list[RawTrain]:
    if not isinstance(data, list):
        raise FetchError("Unexpected TrainView document: expected a list")
    trains = []
    for item in data:
        try:
            trains.append(parse_train(item))
        except MalformedRecordError as e:
            logger.warning("Skipping malformed train record (%s): %s", e, item)
    return trains


class TransitViewClient:
    """Fetches current bus and train snapshots."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, url: str, label: str) -> httpx.Response:
        """GET request with retry and exponential backoff; raises FetchError when exhausted."""
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await self._client.get(url)
                resp.raise_for_status()
                return resp
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise FetchError(f"{label} failed after {MAX_RETRIES + 1} attempts: {e}") from e
            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d got HTTP %d, retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, e.response.status_code, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise FetchError(f"Failed to fetch {label}: HTTP {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise FetchError(f"Failed to fetch {label}: {e}") from e
        raise FetchError(f"Failed to fetch {label}")

    async def _get_json(self, url: str, label: str) -> Any:
        resp = await self._get_with_retry(url, label)
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(f"Undecodable {label} response: {e}") from e

    async def fetch_buses(self) -> list[RawBus]:
        """Fetch all current bus positions."""
        buses = parse_buses(await self._get_json(settings.transitview_url, "buses"))
        logger.info("Fetched %d buses from TransitView", len(buses))
        return buses

    async def fetch_trains(self) -> list[RawTrain]:
        """Fetch all current train positions."""
        trains = parse_trains(await self._get_json(settings.trainview_url, "trains"))
        logger.info("Fetched %d trains from TrainView", len(trains))
        return trains
