"""Tests for geometry primitives."""

import pytest

from transit_eta.core.geometry import (
    distance_point_to_segment,
    haversine_distance,
    interpolate_along_segment,
    progress_along_segment,
    project_point_to_segment,
)
from transit_eta.core.models import Coordinate

# 0.001 deg of latitude along a meridian
M_PER_MILLIDEGREE = 111.195

START = Coordinate(46.770, 23.600)
END = Coordinate(46.771, 23.600)


def test_haversine_zero_for_same_point():
    assert haversine_distance(START, START) == 0.0


def test_haversine_along_meridian():
    assert haversine_distance(START, END) == pytest.approx(M_PER_MILLIDEGREE, rel=1e-3)


def test_haversine_symmetric():
    a = Coordinate(46.7712, 23.6236)
    b = Coordinate(46.7548, 23.5941)
    assert haversine_distance(a, b) == pytest.approx(haversine_distance(b, a))


def test_project_midpoint_of_segment():
    closest, position = project_point_to_segment(Coordinate(46.7705, 23.601), START, END)
    assert position == pytest.approx(0.5)
    assert closest.lat == pytest.approx(46.7705)
    assert closest.lon == pytest.approx(23.600)


def test_projection_position_is_clamped():
    points = [
        Coordinate(46.760, 23.600),  # before start
        Coordinate(46.790, 23.600),  # past end
        Coordinate(46.7703, 23.650),  # far to the side
        Coordinate(-10.0, 140.0),
    ]
    for point in points:
        _, position = project_point_to_segment(point, START, END)
        assert 0.0 <= position <= 1.0


def test_projection_past_end_snaps_to_end():
    closest, position = project_point_to_segment(Coordinate(46.780, 23.600), START, END)
    assert position == 1.0
    assert closest.lat == pytest.approx(END.lat)
    assert closest.lon == pytest.approx(END.lon)


def test_degenerate_segment():
    closest, position = project_point_to_segment(Coordinate(46.775, 23.61), START, START)
    assert closest == START
    assert position == 0.0
    assert progress_along_segment(Coordinate(46.775, 23.61), START, START) == 0.0


def test_distance_point_to_segment_perpendicular():
    # 0.001 deg of longitude at ~46.77N is about 76 m
    dist = distance_point_to_segment(Coordinate(46.7705, 23.601), START, END)
    assert 70 < dist < 82


def test_progress_is_unclamped():
    assert progress_along_segment(Coordinate(46.772, 23.600), START, END) == pytest.approx(2.0)
    assert progress_along_segment(Coordinate(46.769, 23.600), START, END) == pytest.approx(-1.0)


def test_interpolate_quarter():
    point = interpolate_along_segment(START, END, 0.25)
    assert point.lat == pytest.approx(46.77025)
    assert point.lon == pytest.approx(23.600)
