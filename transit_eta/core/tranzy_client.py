"""Async client for the Tranzy open-data API (api.tranzy.ai)."""

import asyncio
import datetime
import logging

import httpx
import orjson

from transit_eta.config import settings
from transit_eta.core.models import Coordinate, RouteShape, Stop, Trip, TripStopTime, Vehicle

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF = [2, 4, 8]  # seconds between retries


def _parse_timestamp(raw) -> datetime.datetime | None:
    """Parse an ISO timestamp like '2026-01-15T10:30:00Z' to an aware UTC datetime."""
    if not raw:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc)


def _optional_speed(raw) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except (ValueError, TypeError):
        return None


class TranzyClient:
    """Fetches the static dataset and live vehicle positions for one agency."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        agency_id: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.agency_id = agency_id if agency_id is not None else settings.agency_id
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.tranzy_base_url,
            timeout=30.0,
            headers={
                "Accept": "application/json",
                "X-API-KEY": api_key if api_key is not None else settings.tranzy_api_key,
                "X-Agency-Id": str(self.agency_id),
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, path: str, label: str) -> list[dict]:
        """GET a JSON list with retry and exponential backoff; [] on failure."""
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await self._client.get(path)
                resp.raise_for_status()
                data = orjson.loads(resp.content)
                if not isinstance(data, list):
                    logger.error("Unexpected %s payload from Tranzy: %s", label, type(data).__name__)
                    return []
                return data
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error("%s failed after %d attempts: %s", label, MAX_RETRIES + 1, e)
                    return []
            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d got HTTP %d, retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, e.response.status_code, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error("Failed to fetch %s from Tranzy: %s", label, e)
                    return []
            except orjson.JSONDecodeError:
                logger.exception("Failed to parse %s response from Tranzy", label)
                return []
        return []

    async def fetch_stops(self) -> list[Stop]:
        stops = []
        for item in await self._get_with_retry("/stops", "stops"):
            try:
                lat = float(item["stop_lat"])
                lon = float(item["stop_lon"])
                if lat == 0 or lon == 0:
                    continue
                stops.append(Stop(
                    id=int(item["stop_id"]),
                    name=str(item.get("stop_name") or "").strip(),
                    position=Coordinate(lat=lat, lon=lon),
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.debug("Skipping malformed stop record: %s", e)
        logger.info("Fetched %d stops from Tranzy", len(stops))
        return stops

    async def fetch_trips(self) -> list[Trip]:
        trips = []
        for item in await self._get_with_retry("/trips", "trips"):
            try:
                shape_id = item.get("shape_id")
                trips.append(Trip(
                    trip_id=str(item["trip_id"]),
                    route_id=item.get("route_id"),
                    shape_id=str(shape_id) if shape_id is not None else None,
                    headsign=str(item.get("trip_headsign") or ""),
                    direction_id=int(item.get("direction_id") or 0),
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.debug("Skipping malformed trip record: %s", e)
        logger.info("Fetched %d trips from Tranzy", len(trips))
        return trips

    async def fetch_stop_times(self) -> list[TripStopTime]:
        stop_times = []
        for item in await self._get_with_retry("/stop_times", "stop_times"):
            try:
                stop_times.append(TripStopTime(
                    trip_id=str(item["trip_id"]),
                    stop_id=int(item["stop_id"]),
                    sequence=int(item["stop_sequence"]),
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.debug("Skipping malformed stop_time record: %s", e)
        logger.info("Fetched %d stop times from Tranzy", len(stop_times))
        return stop_times

    async def fetch_shapes(self) -> dict[str, RouteShape]:
        """shape_id -> RouteShape built from the ordered shape points."""
        points: dict[str, list[tuple[int, Coordinate]]] = {}
        for item in await self._get_with_retry("/shapes", "shapes"):
            try:
                points.setdefault(str(item["shape_id"]), []).append((
                    int(item["shape_pt_sequence"]),
                    Coordinate(lat=float(item["shape_pt_lat"]), lon=float(item["shape_pt_lon"])),
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.debug("Skipping malformed shape point: %s", e)

        shapes = {}
        for shape_id, seq_points in points.items():
            seq_points.sort(key=lambda p: p[0])
            shapes[shape_id] = RouteShape.from_points(shape_id, [p for _, p in seq_points])
        logger.info("Fetched %d route shapes from Tranzy", len(shapes))
        return shapes

    async def fetch_vehicles(self) -> list[Vehicle]:
        """Current vehicle positions; vehicles without coordinates or timestamp are dropped."""
        vehicles = []
        for item in await self._get_with_retry("/vehicles", "vehicles"):
            try:
                timestamp = _parse_timestamp(item.get("timestamp"))
                lat = float(item["latitude"])
                lon = float(item["longitude"])
                if timestamp is None or lat == 0 or lon == 0:
                    continue
                trip_id = item.get("trip_id")
                vehicles.append(Vehicle(
                    id=int(item["id"]),
                    position=Coordinate(lat=lat, lon=lon),
                    speed_kmh=_optional_speed(item.get("speed")),
                    timestamp=timestamp,
                    trip_id=str(trip_id) if trip_id is not None else None,
                    route_id=item.get("route_id"),
                    label=str(item.get("label") or ""),
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.debug("Skipping malformed vehicle record: %s", e)
        logger.info("Fetched %d vehicles from Tranzy", len(vehicles))
        return vehicles
