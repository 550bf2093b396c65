"""Diagnostics API for the static dataset and position predictions."""

from fastapi import APIRouter

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])

# Will be set by main.py
tracker = None


@router.get("")
async def get_diagnostics():
    """Dataset coverage, density center and speed-method breakdown."""
    if tracker is None:
        return {"error": "Tracker not initialized"}
    return tracker.get_diagnostics()
