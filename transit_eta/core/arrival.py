"""Arrival estimates for vehicles approaching a stop.

Combines the next-stop resolver, the distance calculator and the speed
predictor into a minutes estimate plus a discrete status used for display
and ordering.
"""

import logging
import math
from collections.abc import Iterable, Mapping, Sequence

from transit_eta.config import DEFAULT_CONFIG, EstimationConfig
from transit_eta.core.distance import (
    calculate_distance,
    calculate_distance_via_stops,
    has_segments,
    is_ahead,
    lookup_route_shape,
    project_stop_to_shape,
)
from transit_eta.core.geometry import haversine_distance
from transit_eta.core.models import (
    ArrivalResult,
    ArrivalStatus,
    Confidence,
    Coordinate,
    DistanceMethod,
    DistanceResult,
    RouteShape,
    SpeedPrediction,
    Stop,
    Trip,
    TripStopTime,
    Vehicle,
)
from transit_eta.core.next_stop import (
    group_stop_times_by_trip,
    index_stops,
    resolve_next_stop,
    sorted_trip_stop_times,
)
from transit_eta.core.speed import SpeedPredictor, is_valid_speed

logger = logging.getLogger(__name__)

_CONFIDENCE_RANK = {Confidence.HIGH: 0, Confidence.MEDIUM: 1, Confidence.LOW: 2}
_TIME_RANGE_VARIABILITY = {Confidence.HIGH: 0.1, Confidence.MEDIUM: 0.2, Confidence.LOW: 0.3}


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

def calculate_dwell_time(intermediate_stops: int, config: EstimationConfig = DEFAULT_CONFIG) -> float:
    """Total dwell time in minutes for the stops served before the target."""
    return intermediate_stops * config.dwell_time_seconds / 60


def calculate_arrival_time(
    distance_m: float,
    intermediate_stops: int,
    predicted_speed_kmh: float | None = None,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> float:
    """Minutes to cover distance_m plus dwell time, rounded to 0.1 min."""
    effective_speed = (
        predicted_speed_kmh if predicted_speed_kmh and predicted_speed_kmh > 0 else config.average_speed_kmh
    )
    travel_minutes = (max(0.0, distance_m) / 1000) / effective_speed * 60
    total = travel_minutes + calculate_dwell_time(max(0, intermediate_stops), config)
    return round(total * 10) / 10


def calculate_time_range(estimated_minutes: float, confidence: Confidence) -> dict:
    """Spread an estimate by ±10/20/30 % depending on confidence."""
    variation = estimated_minutes * _TIME_RANGE_VARIABILITY[confidence]
    return {
        "min": max(0.0, estimated_minutes - variation),
        "max": estimated_minutes + variation,
        "estimate": estimated_minutes,
    }


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def generate_status_message(status: ArrivalStatus, estimated_minutes: float) -> str:
    if status is ArrivalStatus.AT_STOP:
        return "At stop"
    if status is ArrivalStatus.ARRIVING_SOON:
        return "Arriving soon"
    if status is ArrivalStatus.IN_MINUTES:
        # Half minutes round up
        minutes = math.floor(estimated_minutes + 0.5)
        return f"In {minutes} minute{'' if minutes == 1 else 's'}"
    if status is ArrivalStatus.JUST_LEFT:
        return "Just left"
    if status is ArrivalStatus.DEPARTED:
        return "Departed"
    return "Off route"


def generate_status_with_confidence(
    status: ArrivalStatus, estimated_minutes: float, confidence: Confidence,
) -> str:
    message = generate_status_message(status, estimated_minutes)
    return f"{message} (estimated)" if confidence is Confidence.LOW else message


def _worst_confidence(*confidences: Confidence) -> Confidence:
    return max(confidences, key=lambda c: _CONFIDENCE_RANK[c])


def _target_not_behind(
    target: Stop,
    next_stop: Stop,
    positions: Mapping,
    shape: RouteShape | None,
) -> bool:
    """True when the target is the next stop or lies further along the trip.

    Route position on the shape takes precedence over trip sequence.
    """
    if target.id == next_stop.id:
        return True
    if has_segments(shape):
        target_proj = project_stop_to_shape(target, shape)
        next_proj = project_stop_to_shape(next_stop, shape)
        return not is_ahead(target_proj, next_proj)
    return positions.get(target.id, -1) >= positions.get(next_stop.id, -1)


def _route_distance(
    vehicle: Vehicle,
    target: Stop,
    next_stop: Stop,
    between: Sequence[Stop],
    shape: RouteShape | None,
    config: EstimationConfig,
) -> DistanceResult:
    """vehicle -> next stop -> ... -> target."""
    if has_segments(shape):
        first_leg = calculate_distance(vehicle.position, next_stop.position, shape, config=config)
        second_leg = calculate_distance(next_stop.position, target.position, shape, config=config)
        return DistanceResult(
            total_distance_m=first_leg.total_distance_m + second_leg.total_distance_m,
            method=DistanceMethod.ROUTE_SHAPE,
            confidence=_worst_confidence(first_leg.confidence, second_leg.confidence),
        )
    return calculate_distance_via_stops(vehicle.position, target.position, [s.position for s in between])


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def calculate_vehicle_arrival_time(
    vehicle: Vehicle,
    target_stop: Stop,
    trips: Iterable[Trip] | Mapping,
    trip_stop_times: Iterable[TripStopTime],
    stops: Iterable[Stop] | Mapping,
    route_shape: RouteShape | None = None,
    *,
    speed_prediction: SpeedPrediction | None = None,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> ArrivalResult:
    """Estimate when a vehicle reaches target_stop and classify its status.

    Callers are expected to pass only vehicles whose trip serves target_stop;
    otherwise the result degrades to DEPARTED.
    """
    stops_by_id = stops if isinstance(stops, Mapping) else index_stops(stops)
    trips_by_id = trips if isinstance(trips, Mapping) else {t.trip_id: t for t in trips}
    shape = route_shape if has_segments(route_shape) else None

    if vehicle.trip_id is not None and vehicle.trip_id not in trips_by_id:
        logger.debug("Vehicle %s runs unknown trip %s", vehicle.id, vehicle.trip_id)

    trip_sts = sorted_trip_stop_times(vehicle.trip_id, trip_stop_times) if vehicle.trip_id else []
    positions: dict = {}
    for i, st in enumerate(trip_sts):
        positions.setdefault(st.stop_id, i)
    serves_target = target_stop.id in positions

    resolution = resolve_next_stop(vehicle, trip_sts, stops_by_id, shape, config)
    next_stop = resolution.stop

    if speed_prediction is None:
        speed_prediction = SpeedPredictor(config).predict_speed(vehicle)

    # Distance and intermediate stops
    target_ahead = (
        serves_target and next_stop is not None
        and _target_not_behind(target_stop, next_stop, positions, shape)
    )
    intermediate: list[Stop] = []
    if target_ahead and next_stop.id != target_stop.id:
        start, end = positions.get(next_stop.id, 0), positions[target_stop.id]
        intermediate = [
            stops_by_id[st.stop_id] for st in trip_sts[start:end] if st.stop_id in stops_by_id
        ]
        distance = _route_distance(vehicle, target_stop, next_stop, intermediate, shape, config)
    else:
        distance = calculate_distance(vehicle.position, target_stop.position, shape, config=config)

    estimated_minutes = calculate_arrival_time(
        distance.total_distance_m, len(intermediate), speed_prediction.predicted_speed_kmh, config,
    )

    # Status
    distance_to_target = haversine_distance(vehicle.position, target_stop.position)
    if distance_to_target <= config.proximity_threshold_m:
        reported_speed = vehicle.speed_kmh if is_valid_speed(vehicle.speed_kmh) else 0
        if reported_speed == 0:
            status = ArrivalStatus.AT_STOP
            estimated_minutes = 0.0
        elif next_stop is not None and next_stop.id == target_stop.id:
            status = ArrivalStatus.ARRIVING_SOON
        else:
            status = ArrivalStatus.JUST_LEFT
    elif not serves_target:
        logger.warning(
            "Stop %s is not served by trip %s of vehicle %s",
            target_stop.id, vehicle.trip_id, vehicle.id,
        )
        status = ArrivalStatus.DEPARTED
    elif resolution.off_route:
        status = ArrivalStatus.OFF_ROUTE
    elif next_stop is None:
        status = ArrivalStatus.DEPARTED
    elif target_ahead:
        status = ArrivalStatus.IN_MINUTES
    elif distance_to_target <= config.just_left_window_m:
        status = ArrivalStatus.JUST_LEFT
    else:
        status = ArrivalStatus.DEPARTED

    return ArrivalResult(
        vehicle_id=vehicle.id,
        estimated_minutes=estimated_minutes,
        status=status,
        status_message=generate_status_message(status, estimated_minutes),
        confidence=distance.confidence,
        calculation_method=distance.method,
        raw_distance_m=distance.total_distance_m,
        next_stop_id=next_stop.id if next_stop else None,
        drop_off_only=serves_target and is_stop_end_for_trip(target_stop.id, trip_sts),
    )


def sort_vehicles_by_arrival(results: Iterable[ArrivalResult]) -> list[ArrivalResult]:
    """Order by status group, then minutes, then numeric vehicle id."""
    return sorted(results, key=lambda r: (r.status.sort_order, r.estimated_minutes, r.vehicle_id))


def is_stop_end_for_trip(stop_id, trip_stop_times: Sequence[TripStopTime]) -> bool:
    """True when stop_id has the highest sequence among the trip's stop times."""
    if not trip_stop_times:
        return False
    return max(trip_stop_times, key=lambda st: st.sequence).stop_id == stop_id


def is_drop_off_only_stop(results: Sequence[ArrivalResult]) -> bool:
    """Nobody can board: vehicles serve the stop and every one of them terminates there."""
    return bool(results) and all(r.drop_off_only for r in results)


def vehicle_serves_stop(
    vehicle: Vehicle, stop: Stop, stop_times_by_trip: Mapping[str, Sequence[TripStopTime]],
) -> bool:
    if vehicle.trip_id is None:
        return False
    return any(st.stop_id == stop.id for st in stop_times_by_trip.get(vehicle.trip_id, ()))


def calculate_arrivals_for_stop(
    target_stop: Stop,
    vehicles: Sequence[Vehicle],
    trips: Iterable[Trip] | Mapping,
    trip_stop_times: Iterable[TripStopTime] | Mapping[str, Sequence[TripStopTime]],
    stops: Iterable[Stop] | Mapping,
    route_shapes: Mapping[str, RouteShape] | None,
    *,
    density_center: Coordinate | None = None,
    predictor: SpeedPredictor | None = None,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> list[ArrivalResult]:
    """Sorted arrival results for every vehicle whose trip serves target_stop."""
    stops_by_id = stops if isinstance(stops, Mapping) else index_stops(stops)
    trips_by_id = trips if isinstance(trips, Mapping) else {t.trip_id: t for t in trips}
    by_trip = (
        trip_stop_times if isinstance(trip_stop_times, Mapping)
        else group_stop_times_by_trip(trip_stop_times)
    )
    predictor = predictor or SpeedPredictor(config)

    results = []
    for vehicle in vehicles:
        if not vehicle_serves_stop(vehicle, target_stop, by_trip):
            continue
        shape = lookup_route_shape(vehicle.trip_id, route_shapes, trips_by_id)
        results.append(calculate_vehicle_arrival_time(
            vehicle,
            target_stop,
            trips_by_id,
            by_trip[vehicle.trip_id],
            stops_by_id,
            shape,
            speed_prediction=predictor.predict_speed(vehicle, vehicles, density_center),
            config=config,
        ))

    logger.debug("Stop %s: %d of %d vehicles serve it", target_stop.id, len(results), len(vehicles))
    return sort_vehicles_by_arrival(results)
