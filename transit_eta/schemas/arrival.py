from pydantic import BaseModel


class StopInfo(BaseModel):
    id: int
    name: str
    lat: float
    lon: float


class TimeRange(BaseModel):
    min: float
    max: float
    estimate: float


class StopArrival(BaseModel):
    vehicle_id: int
    label: str = ""
    route_id: int | str | None = None
    trip_id: str | None = None
    estimated_minutes: float
    status: str
    status_message: str
    confidence: str
    calculation_method: str
    distance_m: float
    next_stop_id: int | None = None
    drop_off_only: bool = False  # the vehicle's trip ends at this stop
    time_range: TimeRange


class StopArrivals(BaseModel):
    stop_id: int
    stop_name: str
    drop_off_only: bool = False  # every listed vehicle terminates here
    arrivals: list[StopArrival]
