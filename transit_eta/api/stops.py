"""Stop REST API endpoints."""

import asyncio

from fastapi import APIRouter, HTTPException

from transit_eta.schemas.arrival import StopArrivals, StopInfo

router = APIRouter(prefix="/api/stops", tags=["stops"])

# Will be set by main.py
tracker = None


@router.get("", response_model=list[StopInfo])
async def list_stops():
    """Get all stops of the configured agency."""
    if tracker is None:
        return []
    stops = sorted(tracker.dataset.stops, key=lambda s: s.name)
    return [StopInfo(id=s.id, name=s.name, lat=s.position.lat, lon=s.position.lon) for s in stops]


@router.get("/{stop_id}/arrivals", response_model=StopArrivals)
async def get_arrivals(stop_id: int, route: int | None = None):
    """Get vehicles approaching a stop, ordered by status and estimated minutes."""
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized")

    # Estimation is CPU-bound; run it in a worker thread
    data = await asyncio.to_thread(tracker.get_stop_arrivals, stop_id, route)
    if data is None:
        raise HTTPException(status_code=404, detail="Stop not found")
    return StopArrivals(**data)
