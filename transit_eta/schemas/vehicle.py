from pydantic import BaseModel


class PredictionInfo(BaseModel):
    lat: float
    lon: float
    speed_kmh: float
    speed_method: str
    speed_confidence: str
    distance_traveled_m: float
    stations_encountered: int
    total_dwell_time_ms: float
    position_applied: bool
    timestamp_age_ms: float


class VehicleState(BaseModel):
    id: int
    label: str
    route_id: int | str | None = None
    trip_id: str | None = None
    lat: float  # last reported GPS fix
    lon: float
    speed: float | None = None
    timestamp: str
    prediction: PredictionInfo
