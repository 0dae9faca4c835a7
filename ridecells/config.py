"""Centralised application settings loaded from environment / .env file."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Redis (document store backend)
    redis_url: str = "redis://localhost:6379/0"
    # Every live watcher holds its own Pub/Sub connection from the pool.
    redis_max_connections: int = 256
    redis_health_check_interval: int = 30

    # Geo cells
    cell_step_seconds: int = 30  # 30" grid, ~925 m of latitude

    # Presence
    presence_heartbeat_interval_seconds: float = 180.0
    presence_stale_seconds: float = 240.0
    presence_ttl_seconds: float = 86_400.0

    # Ride requests
    request_stale_seconds: float = 180.0
    request_ttl_seconds: float = 86_400.0
    request_heartbeat_interval_seconds: float = 30.0
    expand_delay_seconds: float = 20.0

    # Driver GPS sampling
    gps_sampling_interval_seconds: float = 30.0
    gps_buffer_size: int = 3
    movement_threshold_meters: float = 3.0

    # Client identity written into presence records
    platform: str = "python"
    app_name: str = "ridecells"

    # Display-name fallbacks when the profile lookup fails
    default_client_name: str = "Pasajero"
    default_driver_name: str = "Conductor"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
