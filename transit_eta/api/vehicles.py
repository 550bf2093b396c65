"""Vehicle REST API endpoints."""

from fastapi import APIRouter, HTTPException

from transit_eta.core.tracker import vehicle_state
from transit_eta.schemas.vehicle import VehicleState

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])

# Will be set by main.py
tracker = None


@router.get("", response_model=list[VehicleState])
async def list_vehicles(route: int | None = None):
    """Get all active vehicles with predicted positions."""
    if tracker is None:
        return []
    return [vehicle_state(ev) for ev in tracker.get_vehicles(route_filter=route)]


@router.get("/{vehicle_id}", response_model=VehicleState)
async def get_vehicle(vehicle_id: int):
    """Get a specific vehicle by ID."""
    ev = tracker.get_vehicle(vehicle_id) if tracker else None
    if ev is None:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return vehicle_state(ev)
