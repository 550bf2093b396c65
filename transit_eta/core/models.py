"""Immutable records shared by the arrival estimation core."""

import datetime
import enum
from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from transit_eta.core.distance import ShapeIndex


class DistanceMethod(str, enum.Enum):
    ROUTE_SHAPE = "route_shape"
    STOP_SEGMENTS = "stop_segments"


class NextStopMethod(str, enum.Enum):
    GPS = "gps"
    DISTANCE_FALLBACK = "distance_fallback"


class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SpeedMethod(str, enum.Enum):
    API_SPEED = "api_speed"
    NEARBY_AVERAGE = "nearby_average"
    LOCATION_BASED = "location_based"
    STATIC_FALLBACK = "static_fallback"


class SpeedConfidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


class ArrivalStatus(str, enum.Enum):
    AT_STOP = "at_stop"
    ARRIVING_SOON = "arriving_soon"
    IN_MINUTES = "in_minutes"
    JUST_LEFT = "just_left"
    DEPARTED = "departed"
    OFF_ROUTE = "off_route"

    @property
    def sort_order(self) -> int:
        return _STATUS_SORT_ORDER[self]


_STATUS_SORT_ORDER = {
    ArrivalStatus.AT_STOP: 0,
    ArrivalStatus.ARRIVING_SOON: 1,
    ArrivalStatus.IN_MINUTES: 2,
    ArrivalStatus.JUST_LEFT: 3,
    ArrivalStatus.DEPARTED: 4,
    ArrivalStatus.OFF_ROUTE: 5,
}


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float


@dataclass(frozen=True)
class Stop:
    id: int | str
    name: str
    position: Coordinate


@dataclass(frozen=True)
class ShapeSegment:
    start: Coordinate
    end: Coordinate
    distance_m: float


@dataclass(frozen=True)
class RouteShape:
    id: str
    points: tuple[Coordinate, ...]
    segments: tuple[ShapeSegment, ...]

    @classmethod
    def from_points(cls, shape_id: str, points: list[Coordinate]) -> "RouteShape":
        """Build a shape with precomputed haversine segment lengths."""
        from transit_eta.core.geometry import haversine_distance

        pts = tuple(points)
        segments = tuple(
            ShapeSegment(start=a, end=b, distance_m=haversine_distance(a, b))
            for a, b in zip(pts, pts[1:])
        )
        return cls(id=shape_id, points=pts, segments=segments)

    @cached_property
    def index(self) -> "ShapeIndex":
        """Segment arrays and cumulative lengths, built on first use and kept with the shape."""
        from transit_eta.core.distance import ShapeIndex

        return ShapeIndex(self)

    @property
    def total_length_m(self) -> float:
        return self.index.total_length_m


@dataclass(frozen=True)
class TripStopTime:
    trip_id: str
    stop_id: int | str
    sequence: int


@dataclass(frozen=True)
class Trip:
    trip_id: str
    route_id: int | str | None
    shape_id: str | None = None
    headsign: str = ""
    direction_id: int = 0


@dataclass(frozen=True)
class Vehicle:
    id: int
    position: Coordinate
    speed_kmh: float | None
    timestamp: datetime.datetime
    trip_id: str | None = None
    route_id: int | str | None = None
    label: str = ""


@dataclass(frozen=True)
class ProjectionResult:
    closest_point: Coordinate
    distance_to_shape_m: float
    segment_index: int
    position_along_segment: float  # 0.0–1.0 within the segment


@dataclass(frozen=True)
class DistanceResult:
    total_distance_m: float
    method: DistanceMethod
    confidence: Confidence


@dataclass(frozen=True)
class SpeedPrediction:
    predicted_speed_kmh: float
    method: SpeedMethod
    confidence: SpeedConfidence
    api_speed_kmh: float | None = None
    nearby_vehicle_count: int = 0
    nearby_average_speed_kmh: float | None = None
    distance_to_center_m: float | None = None


@dataclass(frozen=True)
class MovementSimulation:
    end_position: Coordinate
    distance_traveled_m: float
    stations_encountered: tuple[TripStopTime, ...] = ()
    total_dwell_time_ms: float = 0.0


@dataclass(frozen=True)
class PredictionMetadata:
    predicted_position: Coordinate
    predicted_speed_kmh: float
    speed_method: SpeedMethod
    speed_confidence: SpeedConfidence
    distance_traveled_m: float
    stations_encountered: int
    total_dwell_time_ms: float
    position_applied: bool
    timestamp_age_ms: float


@dataclass(frozen=True)
class EnhancedVehicle:
    vehicle: Vehicle
    prediction: PredictionMetadata

    @property
    def api_position(self) -> Coordinate:
        return self.vehicle.position

    @property
    def position(self) -> Coordinate:
        if self.prediction.position_applied:
            return self.prediction.predicted_position
        return self.vehicle.position


@dataclass(frozen=True)
class ArrivalResult:
    vehicle_id: int
    estimated_minutes: float
    status: ArrivalStatus
    status_message: str
    confidence: Confidence
    calculation_method: DistanceMethod
    raw_distance_m: float = 0.0
    next_stop_id: int | str | None = None
    drop_off_only: bool = False  # target is the last stop of the vehicle's trip
