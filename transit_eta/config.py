from dataclasses import dataclass

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class EstimationConfig:
    """Tuning constants for the arrival estimation core (meters, km/h, seconds)."""

    # Average vehicle speed used when no prediction is available
    average_speed_kmh: float = 25.0
    # Dwell time per intermediate stop
    dwell_time_seconds: float = 30.0
    # "At stop" radius
    proximity_threshold_m: float = 50.0
    # Beyond this distance from the route shape the GPS fix is not trusted
    off_route_threshold_m: float = 200.0
    # A passed stop still counts as "just left" within this distance
    just_left_window_m: float = 200.0
    # Nearest-stop radius for the next-stop fallback and trip-end check
    next_stop_proximity_m: float = 100.0
    # Projection confidence bands for shape-based distances
    high_confidence_shape_m: float = 25.0
    medium_confidence_shape_m: float = 100.0

    # Speed prediction
    moving_speed_threshold_kmh: float = 1.0
    nearby_radius_m: float = 500.0
    min_nearby_vehicles: int = 2
    max_nearby_vehicles: int = 10
    high_confidence_nearby_count: int = 5
    location_base_speed_kmh: float = 35.0
    location_density_factor: float = 0.5
    location_max_distance_m: float = 5000.0

    # Position prediction is skipped for fixes older than this
    max_prediction_age_seconds: float = 300.0


DEFAULT_CONFIG = EstimationConfig()


class Settings(BaseSettings):
    tranzy_base_url: str = "https://api.tranzy.ai/v1/opendata"
    tranzy_api_key: str = ""
    agency_id: int = 2
    poll_interval_seconds: int = 30
    static_refresh_hours: int = 24

    average_speed_kmh: float = DEFAULT_CONFIG.average_speed_kmh
    dwell_time_seconds: float = DEFAULT_CONFIG.dwell_time_seconds
    proximity_threshold_m: float = DEFAULT_CONFIG.proximity_threshold_m
    off_route_threshold_m: float = DEFAULT_CONFIG.off_route_threshold_m
    just_left_window_m: float = DEFAULT_CONFIG.just_left_window_m
    next_stop_proximity_m: float = DEFAULT_CONFIG.next_stop_proximity_m
    moving_speed_threshold_kmh: float = DEFAULT_CONFIG.moving_speed_threshold_kmh
    nearby_radius_m: float = DEFAULT_CONFIG.nearby_radius_m
    max_prediction_age_seconds: float = DEFAULT_CONFIG.max_prediction_age_seconds

    model_config = {"env_prefix": "", "case_sensitive": False}

    def estimation_config(self) -> EstimationConfig:
        return EstimationConfig(
            average_speed_kmh=self.average_speed_kmh,
            dwell_time_seconds=self.dwell_time_seconds,
            proximity_threshold_m=self.proximity_threshold_m,
            off_route_threshold_m=self.off_route_threshold_m,
            just_left_window_m=self.just_left_window_m,
            next_stop_proximity_m=self.next_stop_proximity_m,
            moving_speed_threshold_kmh=self.moving_speed_threshold_kmh,
            nearby_radius_m=self.nearby_radius_m,
            max_prediction_age_seconds=self.max_prediction_age_seconds,
        )


settings = Settings()
