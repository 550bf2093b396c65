"""Main orchestrator: holds the static dataset, polls vehicles, publishes predictions."""

import asyncio
import datetime
import logging
from collections import Counter
from dataclasses import dataclass, field

from transit_eta.config import EstimationConfig, settings
from transit_eta.core.arrival import (
    calculate_arrivals_for_stop,
    calculate_time_range,
    generate_status_with_confidence,
    is_drop_off_only_stop,
)
from transit_eta.core.broadcaster import Broadcaster
from transit_eta.core.distance import has_segments, lookup_route_shape, project_stop_to_shape
from transit_eta.core.models import ArrivalResult, EnhancedVehicle, RouteShape, Stop, Trip, TripStopTime
from transit_eta.core.movement import enhance_vehicles_with_predictions, get_prediction_summary
from transit_eta.core.next_stop import group_stop_times_by_trip
from transit_eta.core.speed import SpeedPredictor, StationDensityCache
from transit_eta.core.tranzy_client import TranzyClient
from transit_eta.schemas.vehicle import PredictionInfo, VehicleState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitDataset:
    """Immutable snapshot of the static data for one agency."""

    stops: tuple[Stop, ...] = ()
    stops_by_id: dict = field(default_factory=dict)
    trips_by_id: dict[str, Trip] = field(default_factory=dict)
    stop_times_by_trip: dict[str, list[TripStopTime]] = field(default_factory=dict)
    shapes: dict[str, RouteShape] = field(default_factory=dict)
    loaded_at: datetime.datetime | None = None

    @classmethod
    def build(
        cls,
        stops: list[Stop],
        trips: list[Trip],
        stop_times: list[TripStopTime],
        shapes: dict[str, RouteShape],
    ) -> "TransitDataset":
        """Index the static data and snap every trip's stops to its shape."""
        stops_by_id = {s.id: s for s in stops}
        trips_by_id = {t.trip_id: t for t in trips}
        stop_times_by_trip = group_stop_times_by_trip(stop_times)

        # Polls and arrival requests reuse these projections from the shape index
        snapped = 0
        for trip_id, trip_stop_times in stop_times_by_trip.items():
            shape = lookup_route_shape(trip_id, shapes, trips_by_id)
            if not has_segments(shape):
                continue
            for st in trip_stop_times:
                stop = stops_by_id.get(st.stop_id)
                if stop is not None:
                    project_stop_to_shape(stop, shape)
                    snapped += 1
        logger.debug("Snapped %d trip stops to %d shapes", snapped, len(shapes))

        return cls(
            stops=tuple(stops),
            stops_by_id=stops_by_id,
            trips_by_id=trips_by_id,
            stop_times_by_trip=stop_times_by_trip,
            shapes=shapes,
            loaded_at=datetime.datetime.now(datetime.timezone.utc),
        )


def _matches_route(route_id, route_filter) -> bool:
    return route_filter is None or str(route_id) == str(route_filter)


def vehicle_state(ev: EnhancedVehicle) -> VehicleState:
    v, p = ev.vehicle, ev.prediction
    return VehicleState(
        id=v.id,
        label=v.label,
        route_id=v.route_id,
        trip_id=v.trip_id,
        lat=v.position.lat,
        lon=v.position.lon,
        speed=v.speed_kmh,
        timestamp=v.timestamp.isoformat(),
        prediction=PredictionInfo(
            lat=p.predicted_position.lat,
            lon=p.predicted_position.lon,
            speed_kmh=p.predicted_speed_kmh,
            speed_method=p.speed_method.value,
            speed_confidence=p.speed_confidence.value,
            distance_traveled_m=round(p.distance_traveled_m, 1),
            stations_encountered=p.stations_encountered,
            total_dwell_time_ms=p.total_dwell_time_ms,
            position_applied=p.position_applied,
            timestamp_age_ms=p.timestamp_age_ms,
        ),
    )


def _arrival_rows(results: list[ArrivalResult], current: dict[int, EnhancedVehicle]) -> list[dict]:
    arrivals = []
    for r in results:
        v = current[r.vehicle_id].vehicle
        arrivals.append({
            "vehicle_id": r.vehicle_id,
            "label": v.label,
            "route_id": v.route_id,
            "trip_id": v.trip_id,
            "estimated_minutes": r.estimated_minutes,
            "status": r.status.value,
            "status_message": generate_status_with_confidence(r.status, r.estimated_minutes, r.confidence),
            "confidence": r.confidence.value,
            "calculation_method": r.calculation_method.value,
            "distance_m": round(r.raw_distance_m, 1),
            "next_stop_id": r.next_stop_id,
            "drop_off_only": r.drop_off_only,
            "time_range": calculate_time_range(r.estimated_minutes, r.confidence),
        })
    return arrivals


class VehicleTracker:
    """Orchestrates the estimation pipeline for one agency."""

    def __init__(
        self,
        tranzy: TranzyClient,
        broadcaster: Broadcaster,
        config: EstimationConfig | None = None,
    ) -> None:
        self.tranzy = tranzy
        self.broadcaster = broadcaster
        self.config = config or settings.estimation_config()
        self.predictor = SpeedPredictor(self.config)
        self.density_cache = StationDensityCache()

        self.dataset = TransitDataset()
        # Latest predictions (vehicle_id -> EnhancedVehicle), replaced every poll
        self.current_vehicles: dict[int, EnhancedVehicle] = {}
        self.last_poll_at: datetime.datetime | None = None

    @property
    def agency_id(self) -> int:
        return self.tranzy.agency_id

    def density_center(self):
        return self.density_cache.get_center(self.agency_id, self.dataset.stops)

    async def load_static_data(self) -> None:
        """Fetch stops, trips, stop times and shapes and swap in a new dataset."""
        try:
            stops = await self.tranzy.fetch_stops()
            trips = await self.tranzy.fetch_trips()
            stop_times = await self.tranzy.fetch_stop_times()
            shapes = await self.tranzy.fetch_shapes()

            if not stops:
                logger.warning("Tranzy returned no stops, keeping previous dataset")
                return

            # Shape indexing is CPU-bound, keep it off the event loop
            self.dataset = await asyncio.to_thread(TransitDataset.build, stops, trips, stop_times, shapes)
            self.density_cache.invalidate(self.agency_id)
            logger.info(
                "Loaded %d stops, %d trips, %d shapes for agency %s",
                len(stops), len(self.dataset.trips_by_id), len(shapes), self.agency_id,
            )
        except Exception:
            logger.exception("Error loading static data")

    async def poll_vehicles(self) -> None:
        """Single poll cycle: fetch positions, predict, publish."""
        try:
            vehicles = await self.tranzy.fetch_vehicles()
            now = datetime.datetime.now(datetime.timezone.utc)
            dataset = self.dataset

            enhanced = await asyncio.to_thread(
                enhance_vehicles_with_predictions,
                vehicles,
                dataset.shapes,
                dataset.stop_times_by_trip,
                dataset.stops_by_id,
                trips=dataset.trips_by_id.values(),
                density_center=self.density_center(),
                now=now,
                predictor=self.predictor,
                config=self.config,
            )
            self.current_vehicles = {ev.vehicle.id: ev for ev in enhanced}
            self.last_poll_at = now

            await self.broadcaster.publish([vehicle_state(ev).model_dump() for ev in enhanced])
        except Exception:
            logger.exception("Error in vehicle poll cycle")

    def get_vehicles(self, route_filter: int | str | None = None) -> list[EnhancedVehicle]:
        return [
            ev for ev in self.current_vehicles.values()
            if _matches_route(ev.vehicle.route_id, route_filter)
        ]

    def get_vehicle(self, vehicle_id: int) -> EnhancedVehicle | None:
        return self.current_vehicles.get(vehicle_id)

    def get_arrival_results(
        self,
        stop_id: int,
        route_filter: int | str | None = None,
        current: dict[int, EnhancedVehicle] | None = None,
    ) -> list[ArrivalResult] | None:
        """Sorted arrivals at a stop, or None when the stop is unknown."""
        dataset = self.dataset
        stop = dataset.stops_by_id.get(stop_id)
        if stop is None:
            return None
        current = self.current_vehicles if current is None else current
        vehicles = [ev.vehicle for ev in current.values()]
        results = calculate_arrivals_for_stop(
            stop,
            vehicles,
            dataset.trips_by_id,
            dataset.stop_times_by_trip,
            dataset.stops_by_id,
            dataset.shapes,
            density_center=self.density_center(),
            predictor=self.predictor,
            config=self.config,
        )
        if route_filter is None:
            return results
        route_of = {v.id: v.route_id for v in vehicles}
        return [r for r in results if _matches_route(route_of.get(r.vehicle_id), route_filter)]

    def get_arrivals_for_stop(self, stop_id: int, route_filter: int | str | None = None) -> list[dict] | None:
        # Rows are built from the same poll snapshot the results came from
        current = self.current_vehicles
        results = self.get_arrival_results(stop_id, route_filter, current)
        if results is None:
            return None
        return _arrival_rows(results, current)

    def get_stop_arrivals(self, stop_id: int, route_filter: int | str | None = None) -> dict | None:
        """Stop header, station-level drop-off flag and its arrivals, or None for an unknown stop."""
        stop = self.dataset.stops_by_id.get(stop_id)
        current = self.current_vehicles
        results = self.get_arrival_results(stop_id, route_filter, current)
        if stop is None or results is None:
            return None
        return {
            "stop_id": stop.id,
            "stop_name": stop.name,
            "drop_off_only": is_drop_off_only_stop(results),
            "arrivals": _arrival_rows(results, current),
        }

    def get_diagnostics(self) -> dict:
        """Dataset coverage and prediction statistics for debugging."""
        dataset = self.dataset
        vehicles = list(self.current_vehicles.values())
        with_trip = [ev for ev in vehicles if ev.vehicle.trip_id in dataset.stop_times_by_trip]
        density = self.density_cache.get(self.agency_id, dataset.stops)
        trips_without_shape = sum(
            1 for t in dataset.trips_by_id.values()
            if t.trip_id not in dataset.shapes and (t.shape_id is None or t.shape_id not in dataset.shapes)
        )

        return {
            "agency_id": self.agency_id,
            "static_data_loaded_at": dataset.loaded_at.isoformat() if dataset.loaded_at else None,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "total_stops": len(dataset.stops),
            "total_trips": len(dataset.trips_by_id),
            "total_shapes": len(dataset.shapes),
            "trips_without_shape": trips_without_shape,
            "vehicles_with_known_trip": len(with_trip),
            "vehicles_by_route": dict(Counter(str(ev.vehicle.route_id) for ev in vehicles)),
            "density_center": (
                {"lat": density.center.lat, "lon": density.center.lon,
                 "average_distance_m": round(density.average_distance_m, 1)}
                if density else None
            ),
            "subscribers": self.broadcaster.subscriber_count,
            "predictions": get_prediction_summary(vehicles),
        }
