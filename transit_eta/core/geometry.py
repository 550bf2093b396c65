"""Pure geometric primitives on WGS84 coordinates.

Projection treats lat/lon as a locally flat plane, which is accurate enough
for the short segments of a route shape. Distances are great-circle meters.
"""

import math

import numpy as np

from transit_eta.core.models import Coordinate

EARTH_RADIUS_M = 6_371_000.0


def haversine_distance(a: Coordinate, b: Coordinate) -> float:
    """Distance in meters between two lat/lon points."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    dlat = lat2 - lat1
    dlon = math.radians(b.lon - a.lon)
    h = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.asin(min(1.0, math.sqrt(h)))


def haversine_distances(point: Coordinate, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Distances in meters from one point to arrays of lat/lon positions."""
    lat1 = math.radians(point.lat)
    lat2 = np.radians(lats)
    dlat = lat2 - lat1
    dlon = np.radians(lons - point.lon)
    h = np.sin(dlat / 2) ** 2 + math.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    return EARTH_RADIUS_M * 2 * np.arcsin(np.minimum(1.0, np.sqrt(h)))


def project_point_to_segment(
    point: Coordinate, start: Coordinate, end: Coordinate,
) -> tuple[Coordinate, float]:
    """Return (closest point, position 0.0–1.0) of a point projected onto a segment."""
    position = max(0.0, min(1.0, progress_along_segment(point, start, end)))
    return interpolate_along_segment(start, end, position), position


def distance_point_to_segment(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Distance in meters from a point to the closest point of a segment."""
    closest, _ = project_point_to_segment(point, start, end)
    return haversine_distance(point, closest)


def progress_along_segment(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Unclamped progress (<0 before start, >1 past end) used for direction checks."""
    seg_lat = end.lat - start.lat
    seg_lon = end.lon - start.lon
    len_sq = seg_lat * seg_lat + seg_lon * seg_lon
    if len_sq == 0:
        return 0.0
    return ((point.lat - start.lat) * seg_lat + (point.lon - start.lon) * seg_lon) / len_sq


def interpolate_along_segment(start: Coordinate, end: Coordinate, fraction: float) -> Coordinate:
    return Coordinate(
        lat=start.lat + (end.lat - start.lat) * fraction,
        lon=start.lon + (end.lon - start.lon) * fraction,
    )
