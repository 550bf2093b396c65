"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from transit_eta.api import diagnostics, stops, vehicles, ws
from transit_eta.config import settings
from transit_eta.core.broadcaster import Broadcaster
from transit_eta.core.scheduler import create_scheduler
from transit_eta.core.tracker import VehicleTracker
from transit_eta.core.tranzy_client import TranzyClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    tranzy = TranzyClient()
    broadcaster = Broadcaster()
    tracker = VehicleTracker(tranzy, broadcaster)

    # Wire up API modules
    ws.broadcaster = broadcaster
    vehicles.tracker = tracker
    stops.tracker = tracker
    diagnostics.tracker = tracker

    await tracker.load_static_data()
    await tracker.poll_vehicles()

    scheduler = create_scheduler(tracker)
    scheduler.start()
    logger.info(
        "Transit ETA started for agency %s - polling Tranzy every %ds",
        settings.agency_id, settings.poll_interval_seconds,
    )

    yield

    scheduler.shutdown(wait=False)
    await tranzy.close()
    logger.info("Transit ETA shut down")


app = FastAPI(
    title="Transit Arrival Estimates",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stops.router)
app.include_router(vehicles.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
