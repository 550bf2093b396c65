"""Best-effort current speed of a vehicle.

Priority cascade, first satisfied wins:
1. the speed reported by the API, when the vehicle is moving;
2. the average of moving vehicles nearby;
3. a location estimate: slower near the dense stop cluster (city center);
4. a static average speed, which always succeeds.
"""

import datetime
import logging
import math
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from shapely.geometry import MultiPoint

from transit_eta.config import DEFAULT_CONFIG, EstimationConfig
from transit_eta.core.geometry import haversine_distance
from transit_eta.core.models import Coordinate, SpeedConfidence, SpeedMethod, SpeedPrediction, Stop, Vehicle

logger = logging.getLogger(__name__)


def is_valid_speed(speed: float | None) -> bool:
    """A usable reported speed: a finite, non-negative number."""
    if speed is None or isinstance(speed, bool) or not isinstance(speed, (int, float)):
        return False
    return math.isfinite(speed) and speed >= 0


def kmh_to_mps(speed_kmh: float) -> float:
    return speed_kmh / 3.6


@dataclass(frozen=True)
class StationDensity:
    center: Coordinate
    total_stations: int
    average_distance_m: float
    calculated_at: datetime.datetime


def calculate_density_center(stops: Sequence[Stop]) -> StationDensity:
    """Geographic centroid of all stops, with the mean distance to it."""
    if not stops:
        raise ValueError("Cannot calculate density center with no stops")
    centroid = MultiPoint([(s.position.lon, s.position.lat) for s in stops]).centroid
    center = Coordinate(lat=centroid.y, lon=centroid.x)
    total = sum(haversine_distance(center, s.position) for s in stops)
    return StationDensity(
        center=center,
        total_stations=len(stops),
        average_distance_m=total / len(stops),
        calculated_at=datetime.datetime.now(datetime.timezone.utc),
    )


class StationDensityCache:
    """Caller-owned cache of density centers per agency dataset.

    Computed lazily on first use; invalidate() must be called whenever the
    stop list of an agency changes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: dict[str, StationDensity] = {}

    def get(self, agency_id: str | int, stops: Sequence[Stop]) -> StationDensity | None:
        key = str(agency_id)
        with self._lock:
            cached = self._results.get(key)
            if cached is not None:
                return cached
            if not stops:
                return None
            result = calculate_density_center(stops)
            self._results[key] = result
            logger.debug(
                "Density center for agency %s: (%.5f, %.5f) over %d stops",
                key, result.center.lat, result.center.lon, result.total_stations,
            )
            return result

    def get_center(self, agency_id: str | int, stops: Sequence[Stop]) -> Coordinate | None:
        result = self.get(agency_id, stops)
        return result.center if result else None

    def invalidate(self, agency_id: str | int | None = None) -> None:
        with self._lock:
            if agency_id is None:
                self._results.clear()
            else:
                self._results.pop(str(agency_id), None)


class SpeedPredictor:
    """Hierarchical speed prediction with a guaranteed static fallback."""

    def __init__(self, config: EstimationConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    def predict_speed(
        self,
        vehicle: Vehicle,
        nearby_vehicles: Iterable[Vehicle] = (),
        station_density_center: Coordinate | None = None,
    ) -> SpeedPrediction:
        api_speed = vehicle.speed_kmh if is_valid_speed(vehicle.speed_kmh) else None
        try:
            prediction = self._from_api_speed(vehicle)
            if prediction is None:
                prediction = self._from_nearby_vehicles(vehicle, nearby_vehicles, api_speed)
            if prediction is None:
                prediction = self._from_location(vehicle, station_density_center, api_speed)
        except (ValueError, TypeError, ArithmeticError):
            logger.warning("Speed prediction failed for vehicle %s, using static fallback",
                           vehicle.id, exc_info=True)
            prediction = None

        if prediction is None:
            prediction = self._static_fallback(api_speed)
        return prediction

    def _from_api_speed(self, vehicle: Vehicle) -> SpeedPrediction | None:
        speed = vehicle.speed_kmh
        if not is_valid_speed(speed) or speed <= self.config.moving_speed_threshold_kmh:
            return None
        return SpeedPrediction(
            predicted_speed_kmh=float(speed),
            method=SpeedMethod.API_SPEED,
            confidence=SpeedConfidence.HIGH,
            api_speed_kmh=float(speed),
        )

    def filter_nearby_vehicles(self, vehicle: Vehicle, candidates: Iterable[Vehicle]) -> list[Vehicle]:
        """Other moving vehicles within the nearby radius, capped in number."""
        nearby = []
        for other in candidates:
            if other.id == vehicle.id:
                continue
            if not is_valid_speed(other.speed_kmh) or other.speed_kmh <= self.config.moving_speed_threshold_kmh:
                continue
            if haversine_distance(vehicle.position, other.position) <= self.config.nearby_radius_m:
                nearby.append(other)
                if len(nearby) >= self.config.max_nearby_vehicles:
                    break
        return nearby

    def _from_nearby_vehicles(
        self, vehicle: Vehicle, candidates: Iterable[Vehicle], api_speed: float | None,
    ) -> SpeedPrediction | None:
        nearby = self.filter_nearby_vehicles(vehicle, candidates)
        if len(nearby) < self.config.min_nearby_vehicles:
            return None
        average = round(sum(v.speed_kmh for v in nearby) / len(nearby), 1)
        if average <= 0:
            return None
        return SpeedPrediction(
            predicted_speed_kmh=average,
            method=SpeedMethod.NEARBY_AVERAGE,
            confidence=(
                SpeedConfidence.HIGH
                if len(nearby) >= self.config.high_confidence_nearby_count
                else SpeedConfidence.MEDIUM
            ),
            api_speed_kmh=api_speed,
            nearby_vehicle_count=len(nearby),
            nearby_average_speed_kmh=average,
        )

    def location_based_speed(self, distance_to_center_m: float) -> float:
        """base * (1 - factor * clamp((max - d) / max, 0, 1)), floored at the moving threshold."""
        cfg = self.config
        ratio = max(0.0, min(1.0, (cfg.location_max_distance_m - distance_to_center_m) / cfg.location_max_distance_m))
        speed = cfg.location_base_speed_kmh * (1 - cfg.location_density_factor * ratio)
        return max(speed, cfg.moving_speed_threshold_kmh)

    def _from_location(
        self, vehicle: Vehicle, center: Coordinate | None, api_speed: float | None,
    ) -> SpeedPrediction | None:
        if center is None:
            return None
        distance = haversine_distance(vehicle.position, center)
        if not math.isfinite(distance):
            return None
        speed = self.location_based_speed(distance)
        if not math.isfinite(speed) or speed <= 0:
            return None
        return SpeedPrediction(
            predicted_speed_kmh=speed,
            method=SpeedMethod.LOCATION_BASED,
            confidence=SpeedConfidence.MEDIUM,
            api_speed_kmh=api_speed,
            distance_to_center_m=distance,
        )

    def _static_fallback(self, api_speed: float | None) -> SpeedPrediction:
        return SpeedPrediction(
            predicted_speed_kmh=self.config.average_speed_kmh,
            method=SpeedMethod.STATIC_FALLBACK,
            confidence=SpeedConfidence.VERY_LOW,
            api_speed_kmh=api_speed,
        )


def predict_speed(
    vehicle: Vehicle,
    nearby_vehicles: Iterable[Vehicle] = (),
    station_density_center: Coordinate | None = None,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> SpeedPrediction:
    return SpeedPredictor(config).predict_speed(vehicle, nearby_vehicles, station_density_center)
