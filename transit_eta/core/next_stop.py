"""Determine which stop of its trip a vehicle is heading to.

With a route shape the vehicle and every trip stop are snapped to the shape
and compared by route position. Without one (or when the vehicle is too far
from the shape to trust) a distance-based heuristic is used instead.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from transit_eta.config import DEFAULT_CONFIG, EstimationConfig
from transit_eta.core.distance import has_segments, project_point_to_shape, project_stop_to_shape, route_position
from transit_eta.core.geometry import haversine_distance
from transit_eta.core.models import NextStopMethod, ProjectionResult, RouteShape, Stop, TripStopTime, Vehicle

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class NextStopResolution:
    stop: Stop | None
    method: NextStopMethod
    vehicle_projection: ProjectionResult | None = None
    off_route: bool = False


def sorted_trip_stop_times(trip_id: str, stop_times: Iterable[TripStopTime]) -> list[TripStopTime]:
    """Stop times of one trip ordered by sequence."""
    return sorted((st for st in stop_times if st.trip_id == trip_id), key=lambda st: st.sequence)


def index_stops(stops: Iterable[Stop]) -> dict:
    return {s.id: s for s in stops}


def _trip_stops(
    trip_stop_times: Sequence[TripStopTime], stops_by_id: Mapping,
) -> list[tuple[TripStopTime, Stop]]:
    """Pair each stop time with its stop record, skipping unknown stops."""
    pairs = []
    for st in trip_stop_times:
        stop = stops_by_id.get(st.stop_id)
        if stop is not None:
            pairs.append((st, stop))
    return pairs


def _distance_based_next_stop(
    vehicle: Vehicle,
    pairs: list[tuple[TripStopTime, Stop]],
    config: EstimationConfig,
) -> Stop | None:
    """Nearest stop if close enough, otherwise the first stop of the trip."""
    if not pairs:
        return None
    closest_stop = min(pairs, key=lambda p: haversine_distance(vehicle.position, p[1].position))[1]
    if haversine_distance(vehicle.position, closest_stop.position) <= config.next_stop_proximity_m:
        return closest_stop
    return min(pairs, key=lambda p: p[0].sequence)[1]


def _gps_next_stop(
    vehicle: Vehicle,
    vehicle_projection: ProjectionResult,
    pairs: list[tuple[TripStopTime, Stop]],
    shape: RouteShape,
    config: EstimationConfig,
) -> Stop | None:
    vehicle_pos = route_position(vehicle_projection, shape)
    positioned = sorted(
        ((route_position(project_stop_to_shape(stop, shape), shape), stop) for _, stop in pairs),
        key=lambda p: p[0],
    )

    for stop_pos, stop in positioned:
        if stop_pos > vehicle_pos:
            return stop

    # Nothing ahead: either still at the terminus or the trip is finished
    last_stop = positioned[-1][1]
    if haversine_distance(vehicle.position, last_stop.position) <= config.next_stop_proximity_m:
        return last_stop
    return None


def resolve_next_stop(
    vehicle: Vehicle,
    trip_stop_times: Sequence[TripStopTime],
    stops: Iterable[Stop] | Mapping,
    route_shape: RouteShape | None = None,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> NextStopResolution:
    """Find the next stop of a vehicle along its trip.

    trip_stop_times must belong to the vehicle's trip, sorted by sequence.
    """
    stops_by_id = stops if isinstance(stops, Mapping) else index_stops(stops)
    pairs = _trip_stops(trip_stop_times, stops_by_id)
    if not pairs:
        return NextStopResolution(stop=None, method=NextStopMethod.DISTANCE_FALLBACK)

    if not has_segments(route_shape):
        return NextStopResolution(
            stop=_distance_based_next_stop(vehicle, pairs, config),
            method=NextStopMethod.DISTANCE_FALLBACK,
        )

    projection = project_point_to_shape(vehicle.position, route_shape)
    if projection.distance_to_shape_m > config.off_route_threshold_m:
        logger.debug(
            "Vehicle %s is %.0fm from shape %s, using distance heuristic",
            vehicle.id, projection.distance_to_shape_m, route_shape.id,
        )
        return NextStopResolution(
            stop=_distance_based_next_stop(vehicle, pairs, config),
            method=NextStopMethod.DISTANCE_FALLBACK,
            vehicle_projection=projection,
            off_route=True,
        )

    gps_stop = _gps_next_stop(vehicle, projection, pairs, route_shape, config)
    if gps_stop is not None and gps_stop.id not in {st.stop_id for st, _ in pairs}:
        logger.warning(
            "GPS resolved stop %s outside trip %s for vehicle %s, using distance heuristic",
            gps_stop.id, vehicle.trip_id, vehicle.id,
        )
        return NextStopResolution(
            stop=_distance_based_next_stop(vehicle, pairs, config),
            method=NextStopMethod.DISTANCE_FALLBACK,
            vehicle_projection=projection,
        )

    return NextStopResolution(stop=gps_stop, method=NextStopMethod.GPS, vehicle_projection=projection)


def determine_next_stop(
    vehicle: Vehicle,
    trip_stop_times: Sequence[TripStopTime],
    stops: Iterable[Stop] | Mapping,
    route_shape: RouteShape | None = None,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> Stop | None:
    return resolve_next_stop(vehicle, trip_stop_times, stops, route_shape, config).stop


def group_stop_times_by_trip(stop_times: Iterable[TripStopTime]) -> dict[str, list[TripStopTime]]:
    """trip_id -> stop times sorted by sequence."""
    by_trip: dict[str, list[TripStopTime]] = {}
    for st in stop_times:
        by_trip.setdefault(st.trip_id, []).append(st)
    for trip_stop_times in by_trip.values():
        trip_stop_times.sort(key=lambda st: st.sequence)
    return by_trip
