"""Tests for route-shape and stop-segment distances."""

import pytest

from transit_eta.core.distance import (
    EmptyShapeError,
    calculate_distance,
    calculate_distance_along_shape,
    calculate_distance_via_stops,
    lookup_route_shape,
    project_point_to_shape,
    project_stop_to_shape,
    route_position,
)
from transit_eta.core.geometry import haversine_distance, project_point_to_segment
from transit_eta.core.models import Confidence, Coordinate, DistanceMethod, RouteShape, Stop, Trip

LON = 23.600
# Meters per degree of latitude / longitude around 46.77N
M_PER_DEG_LAT = 111_195.0
M_PER_DEG_LON = 76_135.0


def make_shape(shape_id="s1"):
    """Straight northbound shape of four ~556 m segments."""
    points = [Coordinate(46.770 + 0.005 * i, LON) for i in range(5)]
    return RouteShape.from_points(shape_id, points)


def test_shape_segments_built_from_points():
    shape = make_shape()
    assert len(shape.segments) == 4
    assert shape.total_length_m == pytest.approx(0.02 * M_PER_DEG_LAT, rel=1e-3)


def test_distance_along_shape():
    shape = make_shape()
    result = calculate_distance_along_shape(Coordinate(46.771, LON), Coordinate(46.781, LON), shape)
    assert result.method == DistanceMethod.ROUTE_SHAPE
    assert result.confidence == Confidence.HIGH
    assert result.total_distance_m == pytest.approx(0.010 * M_PER_DEG_LAT, rel=1e-3)


def test_distance_along_shape_is_absolute():
    shape = make_shape()
    forward = calculate_distance_along_shape(Coordinate(46.771, LON), Coordinate(46.781, LON), shape)
    backward = calculate_distance_along_shape(Coordinate(46.781, LON), Coordinate(46.771, LON), shape)
    assert backward.total_distance_m == pytest.approx(forward.total_distance_m)


def test_confidence_degrades_with_distance_from_shape():
    shape = make_shape()
    target = Coordinate(46.781, LON)

    medium = calculate_distance_along_shape(Coordinate(46.771, LON + 50 / M_PER_DEG_LON), target, shape)
    assert medium.confidence == Confidence.MEDIUM

    low = calculate_distance_along_shape(Coordinate(46.771, LON + 150 / M_PER_DEG_LON), target, shape)
    assert low.confidence == Confidence.LOW


def test_via_stops_without_intermediate_is_straight_line():
    result = calculate_distance_via_stops(Coordinate(46.770, LON), Coordinate(46.780, LON))
    assert result.method == DistanceMethod.STOP_SEGMENTS
    assert result.confidence == Confidence.LOW
    assert result.total_distance_m == pytest.approx(0.010 * M_PER_DEG_LAT, rel=1e-3)


def test_via_stops_sums_legs():
    # Detour east and back doubles the lateral leg
    via = [Coordinate(46.775, LON + 0.001)]
    result = calculate_distance_via_stops(Coordinate(46.770, LON), Coordinate(46.780, LON), via)
    assert result.confidence == Confidence.MEDIUM
    assert result.total_distance_m > 0.010 * M_PER_DEG_LAT


def test_empty_shape_falls_back_to_stop_segments():
    empty = RouteShape.from_points("empty", [])
    single = RouteShape.from_points("single", [Coordinate(46.770, LON)])
    for shape in (None, empty, single):
        result = calculate_distance(Coordinate(46.770, LON), Coordinate(46.780, LON), shape)
        assert result.method == DistanceMethod.STOP_SEGMENTS


def test_project_onto_empty_shape_raises():
    with pytest.raises(EmptyShapeError):
        project_point_to_shape(Coordinate(46.770, LON), RouteShape.from_points("empty", []))


def test_route_position_is_monotonic_across_segments():
    shape = make_shape()
    late_on_first = project_point_to_shape(Coordinate(46.7749, LON), shape)
    early_on_second = project_point_to_shape(Coordinate(46.7751, LON), shape)
    assert late_on_first.segment_index == 0
    assert early_on_second.segment_index == 1
    assert route_position(late_on_first, shape) < route_position(early_on_second, shape)


def test_lookup_route_shape_order():
    by_trip = make_shape("t1")
    by_shape_id = make_shape("shape-9")
    trips = {"t2": Trip("t2", route_id=42, shape_id="shape-9")}

    assert lookup_route_shape("t1", {"t1": by_trip, "shape-9": by_shape_id}, trips) is by_trip
    assert lookup_route_shape("t2", {"shape-9": by_shape_id}, trips) is by_shape_id
    assert lookup_route_shape("t3", {"shape-9": by_shape_id}, trips) is None
    assert lookup_route_shape(None, {"t1": by_trip}) is None
    assert lookup_route_shape(None, None) is None


def test_lookup_never_uses_route_id_as_shape_key():
    # Shape "5" belongs to another route; trip t2 of route 5 has no shape of its own
    other_route_shape = make_shape("5")
    trips = {"t2": Trip("t2", route_id=5, shape_id="missing")}
    assert lookup_route_shape("t2", {"5": other_route_shape}, trips) is None


def test_equidistant_segments_resolve_to_lowest_index():
    # Out-and-back over the same line; dyadic coordinates keep the arithmetic exact
    a, b = Coordinate(46.5, 23.5), Coordinate(46.75, 23.5)
    point = Coordinate(46.625, 23.625)
    for points in ([a, b, a], [a, b, a, b], [b, a, b]):
        shape = RouteShape.from_points("loop", points)
        projection = project_point_to_shape(point, shape)
        assert projection.segment_index == 0
        assert projection.position_along_segment == 0.5
        assert projection.closest_point == Coordinate(46.625, 23.5)


def test_projection_matches_per_segment_minimum():
    zigzag = RouteShape.from_points("zigzag", [
        Coordinate(46.770, 23.600),
        Coordinate(46.774, 23.604),
        Coordinate(46.778, 23.600),
        Coordinate(46.782, 23.604),
        Coordinate(46.782, 23.604),  # repeated point, zero-length segment
        Coordinate(46.786, 23.600),
    ])
    points = [
        Coordinate(46.771, 23.603),
        Coordinate(46.776, 23.601),
        Coordinate(46.785, 23.606),
        Coordinate(46.760, 23.590),
        Coordinate(46.790, 23.600),
    ]
    for point in points:
        candidates = []
        for seg in zigzag.segments:
            closest, position = project_point_to_segment(point, seg.start, seg.end)
            candidates.append((haversine_distance(point, closest), position))
        expected_index = min(range(len(candidates)), key=lambda i: candidates[i][0])

        projection = project_point_to_shape(point, zigzag)
        assert projection.segment_index == expected_index
        assert projection.distance_to_shape_m == pytest.approx(candidates[expected_index][0])
        assert projection.position_along_segment == pytest.approx(candidates[expected_index][1])


def test_route_position_uses_cumulative_lengths():
    shape = make_shape()
    projection = project_point_to_shape(Coordinate(46.7825, LON), shape)
    assert projection.segment_index == 2
    expected = sum(s.distance_m for s in shape.segments[:2]) + 0.5 * shape.segments[2].distance_m
    assert route_position(projection, shape) == pytest.approx(expected)
    assert shape.total_length_m == pytest.approx(sum(s.distance_m for s in shape.segments))


def test_stop_projection_is_computed_once_per_shape():
    shape = make_shape()
    stop = Stop(1, "A", Coordinate(46.772, LON))
    first = project_stop_to_shape(stop, shape)
    assert project_stop_to_shape(stop, shape) is first
    assert first == project_point_to_shape(stop.position, shape)
    assert shape.index is shape.index
