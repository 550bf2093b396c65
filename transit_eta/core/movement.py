"""Predict where a vehicle is now from its last (possibly stale) GPS fix.

The vehicle is advanced along its route shape by the distance it would cover
at the predicted speed since its reported timestamp, dwelling at every stop
it passes on the way.
"""

import datetime
import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence

from transit_eta.config import DEFAULT_CONFIG, EstimationConfig
from transit_eta.core.distance import (
    distance_between_projections,
    has_segments,
    is_ahead,
    lookup_route_shape,
    project_point_to_shape,
    project_stop_to_shape,
    route_position,
)
from transit_eta.core.geometry import haversine_distance, interpolate_along_segment
from transit_eta.core.models import (
    Coordinate,
    EnhancedVehicle,
    MovementSimulation,
    PredictionMetadata,
    ProjectionResult,
    RouteShape,
    SpeedPrediction,
    Stop,
    Trip,
    TripStopTime,
    Vehicle,
)
from transit_eta.core.next_stop import index_stops
from transit_eta.core.speed import SpeedPredictor, kmh_to_mps

logger = logging.getLogger(__name__)


def move_along_shape(start: ProjectionResult, distance_m: float, shape: RouteShape) -> Coordinate:
    """Point reached after travelling distance_m forward from a projection (clamped to the shape end)."""
    if distance_m <= 0:
        return start.closest_point

    remaining = distance_m
    index = start.segment_index
    position = start.position_along_segment

    while index < len(shape.segments):
        seg = shape.segments[index]
        left_in_segment = (1 - position) * seg.distance_m
        if remaining <= left_in_segment:
            fraction = position + (remaining / seg.distance_m if seg.distance_m > 0 else 0.0)
            return interpolate_along_segment(seg.start, seg.end, min(1.0, fraction))
        remaining -= left_in_segment
        index += 1
        position = 0.0

    return shape.segments[-1].end


def _stations_ahead(
    current: ProjectionResult,
    trip_stop_times: Sequence[TripStopTime],
    stops_by_id: Mapping,
    shape: RouteShape,
) -> list[tuple[float, TripStopTime, ProjectionResult]]:
    ahead = []
    for st in trip_stop_times:
        stop = stops_by_id.get(st.stop_id)
        if stop is None:
            continue
        projection = project_stop_to_shape(stop, shape)
        if is_ahead(current, projection):
            ahead.append((route_position(projection, shape), st, projection))
    ahead.sort(key=lambda item: item[0])
    return ahead


def _no_movement(vehicle: Vehicle, dwell_ms: float = 0.0) -> MovementSimulation:
    return MovementSimulation(
        end_position=vehicle.position, distance_traveled_m=0.0, total_dwell_time_ms=dwell_ms,
    )


def simulate_movement(
    vehicle: Vehicle,
    route_shape: RouteShape | None,
    trip_stop_times: Sequence[TripStopTime],
    stops: Iterable[Stop] | Mapping,
    predicted_speed_kmh: float,
    elapsed_time_ms: float,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> MovementSimulation:
    """Advance a vehicle along its shape for elapsed_time_ms at the predicted speed."""
    if not has_segments(route_shape):
        return _no_movement(vehicle)

    stops_by_id = stops if isinstance(stops, Mapping) else index_stops(stops)
    dwell_s = config.dwell_time_seconds

    try:
        if predicted_speed_kmh <= config.moving_speed_threshold_kmh:
            near_stop = any(
                haversine_distance(vehicle.position, s.position) <= config.proximity_threshold_m
                for s in stops_by_id.values()
            )
            return _no_movement(vehicle, dwell_s * 1000 if near_stop else 0.0)

        if elapsed_time_ms <= 0:
            return _no_movement(vehicle)

        speed_mps = kmh_to_mps(predicted_speed_kmh)
        budget = speed_mps * (elapsed_time_ms / 1000)
        current = project_point_to_shape(vehicle.position, route_shape)
        traveled = 0.0
        dwell_ms = 0.0
        encountered: list[TripStopTime] = []

        for _, stop_time, projection in _stations_ahead(current, trip_stop_times, stops_by_id, route_shape):
            to_station = distance_between_projections(current, projection, route_shape)
            if budget < to_station:
                return MovementSimulation(
                    end_position=move_along_shape(current, budget, route_shape),
                    distance_traveled_m=traveled + budget,
                    stations_encountered=tuple(encountered),
                    total_dwell_time_ms=dwell_ms,
                )

            budget -= to_station
            traveled += to_station
            current = projection
            encountered.append(stop_time)
            dwell_ms += dwell_s * 1000
            # Dwelling spends the time the vehicle would otherwise have been moving
            budget -= dwell_s * speed_mps
            if budget <= 0:
                return MovementSimulation(
                    end_position=current.closest_point,
                    distance_traveled_m=traveled,
                    stations_encountered=tuple(encountered),
                    total_dwell_time_ms=dwell_ms,
                )

        left_on_shape = route_shape.total_length_m - route_position(current, route_shape)
        moved = max(0.0, min(budget, left_on_shape))
        return MovementSimulation(
            end_position=move_along_shape(current, moved, route_shape),
            distance_traveled_m=traveled + moved,
            stations_encountered=tuple(encountered),
            total_dwell_time_ms=dwell_ms,
        )
    except (ValueError, TypeError, ArithmeticError, IndexError):
        logger.warning("Movement simulation failed for vehicle %s", vehicle.id, exc_info=True)
        return _no_movement(vehicle)


def timestamp_age_ms(vehicle: Vehicle, now: datetime.datetime) -> float:
    ts = vehicle.timestamp
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    return (now - ts).total_seconds() * 1000


def enhance_vehicle_with_prediction(
    vehicle: Vehicle,
    route_shape: RouteShape | None,
    trip_stop_times: Sequence[TripStopTime],
    stops: Iterable[Stop] | Mapping,
    speed_prediction: SpeedPrediction,
    now: datetime.datetime,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> EnhancedVehicle:
    """Attach predicted position and speed metadata; the API fix is kept untouched."""
    age_ms = timestamp_age_ms(vehicle, now)
    fresh_enough = 0 < age_ms <= config.max_prediction_age_seconds * 1000

    if fresh_enough and has_segments(route_shape):
        sim = simulate_movement(
            vehicle, route_shape, trip_stop_times, stops,
            speed_prediction.predicted_speed_kmh, age_ms, config,
        )
        applied = True
    else:
        if age_ms > config.max_prediction_age_seconds * 1000:
            logger.debug("Vehicle %s fix is %.0fs old, not predicting position", vehicle.id, age_ms / 1000)
        sim = _no_movement(vehicle)
        applied = False

    return EnhancedVehicle(
        vehicle=vehicle,
        prediction=PredictionMetadata(
            predicted_position=sim.end_position,
            predicted_speed_kmh=speed_prediction.predicted_speed_kmh,
            speed_method=speed_prediction.method,
            speed_confidence=speed_prediction.confidence,
            distance_traveled_m=sim.distance_traveled_m,
            stations_encountered=len(sim.stations_encountered),
            total_dwell_time_ms=sim.total_dwell_time_ms,
            position_applied=applied,
            timestamp_age_ms=age_ms,
        ),
    )


def enhance_vehicles_with_predictions(
    vehicles: Sequence[Vehicle],
    route_shapes: Mapping[str, RouteShape] | None,
    stop_times_by_trip: Mapping[str, Sequence[TripStopTime]] | None,
    stops: Iterable[Stop] | Mapping,
    *,
    trips: Iterable[Trip] = (),
    density_center: Coordinate | None = None,
    now: datetime.datetime | None = None,
    predictor: SpeedPredictor | None = None,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> list[EnhancedVehicle]:
    """Predicted position and speed for every vehicle, using all vehicles as speed neighbours."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    predictor = predictor or SpeedPredictor(config)
    stops_by_id = stops if isinstance(stops, Mapping) else index_stops(stops)
    trips_by_id = {t.trip_id: t for t in trips}
    stop_times_by_trip = stop_times_by_trip or {}

    enhanced = []
    for vehicle in vehicles:
        shape = lookup_route_shape(vehicle.trip_id, route_shapes, trips_by_id)
        trip_stop_times = stop_times_by_trip.get(vehicle.trip_id, ()) if vehicle.trip_id else ()
        speed = predictor.predict_speed(vehicle, vehicles, density_center)
        enhanced.append(enhance_vehicle_with_prediction(
            vehicle, shape, trip_stop_times, stops_by_id, speed, now, config,
        ))
    return enhanced


def get_prediction_summary(vehicles: Sequence[EnhancedVehicle]) -> dict:
    """Aggregate prediction statistics for diagnostics."""
    total = len(vehicles)
    applied = [v for v in vehicles if v.prediction.position_applied]
    methods = Counter(v.prediction.speed_method.value for v in vehicles)
    return {
        "total_vehicles": total,
        "position_predictions_applied": len(applied),
        "position_prediction_rate": len(applied) / total if total else 0.0,
        "average_timestamp_age_ms": sum(v.prediction.timestamp_age_ms for v in vehicles) / total if total else 0.0,
        "average_predicted_distance_m": (
            sum(v.prediction.distance_traveled_m for v in applied) / len(applied) if applied else 0.0
        ),
        "speed_method_breakdown": dict(methods),
    }
