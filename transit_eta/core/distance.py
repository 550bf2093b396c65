"""Route-following distances: snap points to a route shape and measure along it."""

import logging
from collections.abc import Mapping, Sequence

import numpy as np

from transit_eta.config import DEFAULT_CONFIG, EstimationConfig
from transit_eta.core.geometry import haversine_distance, haversine_distances
from transit_eta.core.models import (
    Confidence,
    Coordinate,
    DistanceMethod,
    DistanceResult,
    ProjectionResult,
    RouteShape,
    Stop,
    Trip,
)

logger = logging.getLogger(__name__)


class EmptyShapeError(ValueError):
    """Raised when projecting onto a route shape that has no segments."""


def has_segments(shape: RouteShape | None) -> bool:
    return shape is not None and len(shape.segments) > 0


class ShapeIndex:
    """Segment arrays of one route shape.

    Built once per shape (see ``RouteShape.index``) so a projection is a few
    vectorised numpy operations instead of a Python loop over every segment.
    Stop projections are memoised per stop position.
    """

    def __init__(self, shape: RouteShape) -> None:
        self.shape_id = shape.id
        # Columns are (lat, lon); planar math works in degrees like the scalar helpers
        self._starts = np.array(
            [(s.start.lat, s.start.lon) for s in shape.segments], dtype=float,
        ).reshape(-1, 2)
        ends = np.array([(s.end.lat, s.end.lon) for s in shape.segments], dtype=float).reshape(-1, 2)
        self._vectors = ends - self._starts
        self._len_sq = np.einsum("ij,ij->i", self._vectors, self._vectors)
        self.lengths = np.array([s.distance_m for s in shape.segments], dtype=float)
        # offsets[i] is the route position where segment i starts
        self.offsets = np.cumsum(self.lengths) - self.lengths
        self.total_length_m = float(self.lengths.sum())
        self._stop_projections: dict[Coordinate, ProjectionResult] = {}

    def __len__(self) -> int:
        return len(self.lengths)

    def project(self, point: Coordinate) -> ProjectionResult:
        """Snap a point to the closest segment (lowest index wins ties)."""
        if not len(self):
            raise EmptyShapeError(f"Route shape {self.shape_id!r} has no segments")

        rel = np.array([point.lat, point.lon]) - self._starts
        dots = np.einsum("ij,ij->i", rel, self._vectors)
        with np.errstate(divide="ignore", invalid="ignore"):
            positions = np.where(self._len_sq > 0, dots / self._len_sq, 0.0)
        positions = np.clip(positions, 0.0, 1.0)
        closest = self._starts + positions[:, None] * self._vectors
        distances = haversine_distances(point, closest[:, 0], closest[:, 1])

        # argmin returns the first minimum
        i = int(np.argmin(distances))
        return ProjectionResult(
            closest_point=Coordinate(lat=float(closest[i, 0]), lon=float(closest[i, 1])),
            distance_to_shape_m=float(distances[i]),
            segment_index=i,
            position_along_segment=float(positions[i]),
        )

    def project_stop(self, position: Coordinate) -> ProjectionResult:
        """Memoised projection for a fixed stop position."""
        projection = self._stop_projections.get(position)
        if projection is None:
            projection = self.project(position)
            self._stop_projections[position] = projection
        return projection

    def route_position(self, projection: ProjectionResult) -> float:
        i = projection.segment_index
        return float(self.offsets[i]) + projection.position_along_segment * float(self.lengths[i])


def project_point_to_shape(point: Coordinate, shape: RouteShape) -> ProjectionResult:
    """Snap a point to the closest segment of a shape (lowest index wins ties)."""
    if not shape.segments:
        raise EmptyShapeError(f"Route shape {shape.id!r} has no segments")
    return shape.index.project(point)


def project_stop_to_shape(stop: Stop, shape: RouteShape) -> ProjectionResult:
    """Like project_point_to_shape, reusing the shape's cached projection of the stop."""
    if not shape.segments:
        raise EmptyShapeError(f"Route shape {shape.id!r} has no segments")
    return shape.index.project_stop(stop.position)


def route_position(projection: ProjectionResult, shape: RouteShape) -> float:
    """Meters from the start of the shape to a projected point."""
    return shape.index.route_position(projection)


def is_ahead(a: ProjectionResult, b: ProjectionResult) -> bool:
    """True when b lies strictly further along the shape than a."""
    if a.segment_index != b.segment_index:
        return b.segment_index > a.segment_index
    return b.position_along_segment > a.position_along_segment


def distance_between_projections(a: ProjectionResult, b: ProjectionResult, shape: RouteShape) -> float:
    """Absolute along-shape distance between two projections."""
    if a.segment_index == b.segment_index:
        seg = shape.segments[a.segment_index]
        return abs(b.position_along_segment - a.position_along_segment) * seg.distance_m
    return abs(route_position(b, shape) - route_position(a, shape))


def _shape_confidence(
    a: ProjectionResult, b: ProjectionResult, config: EstimationConfig,
) -> Confidence:
    worst = max(a.distance_to_shape_m, b.distance_to_shape_m)
    if worst <= config.high_confidence_shape_m:
        return Confidence.HIGH
    if worst <= config.medium_confidence_shape_m:
        return Confidence.MEDIUM
    return Confidence.LOW


def calculate_distance_along_shape(
    vehicle_pos: Coordinate,
    target_pos: Coordinate,
    shape: RouteShape,
    config: EstimationConfig = DEFAULT_CONFIG,
) -> DistanceResult:
    """Distance following the route shape between two snapped points."""
    vehicle_proj = project_point_to_shape(vehicle_pos, shape)
    target_proj = project_point_to_shape(target_pos, shape)
    return DistanceResult(
        total_distance_m=distance_between_projections(vehicle_proj, target_proj, shape),
        method=DistanceMethod.ROUTE_SHAPE,
        confidence=_shape_confidence(vehicle_proj, target_proj, config),
    )


def calculate_distance_via_stops(
    vehicle_pos: Coordinate,
    target_pos: Coordinate,
    intermediate_stops: Sequence[Coordinate] = (),
) -> DistanceResult:
    """Sum of straight-line legs vehicle -> stop1 -> ... -> target."""
    total = 0.0
    current = vehicle_pos
    for stop_pos in intermediate_stops:
        total += haversine_distance(current, stop_pos)
        current = stop_pos
    total += haversine_distance(current, target_pos)

    return DistanceResult(
        total_distance_m=total,
        method=DistanceMethod.STOP_SEGMENTS,
        confidence=Confidence.MEDIUM if intermediate_stops else Confidence.LOW,
    )


def calculate_distance(
    vehicle_pos: Coordinate,
    target_pos: Coordinate,
    shape: RouteShape | None = None,
    intermediate_stops: Sequence[Coordinate] = (),
    config: EstimationConfig = DEFAULT_CONFIG,
) -> DistanceResult:
    """Shape-based distance when a usable shape exists, stop segments otherwise."""
    if has_segments(shape):
        return calculate_distance_along_shape(vehicle_pos, target_pos, shape, config)
    logger.debug("No usable route shape, measuring via %d stops", len(intermediate_stops))
    return calculate_distance_via_stops(vehicle_pos, target_pos, intermediate_stops)


def lookup_route_shape(
    trip_id: str | None,
    route_shapes: Mapping[str, RouteShape] | None,
    trips_by_id: Mapping[str, Trip] | None = None,
) -> RouteShape | None:
    """Find the shape for a trip: keyed by trip id, then by the trip's shape id."""
    if not route_shapes or trip_id is None:
        return None
    shape = route_shapes.get(trip_id)
    if shape is not None:
        return shape
    trip = trips_by_id.get(trip_id) if trips_by_id else None
    if trip is not None and trip.shape_id is not None:
        return route_shapes.get(trip.shape_id)
    return None
