from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://localhost:5432/haygate"
    default_tz: str = "UTC"
    api_key: str | None = None
    log_level: str = "INFO"

    # Metric source (health_connect tables, read-only)
    device_id: str | None = None  # Restrict metric rows to one device (omit for all)
    metric_fetch_timeout_seconds: float = 10.0  # Per-call bound; exceeding it is a failure of that call

    # Shield enforcement endpoint
    shield_endpoint_url: str = "http://localhost:8787/shield"
    shield_timeout_seconds: float = 5.0

    # Emergency override friction
    emergency_code_length: int = 4
    emergency_code_ttl_seconds: int = 300

    # Background reconciliation
    reconcile_interval_seconds: float = 3600.0  # Scheduled wakes are hourly at best
    reconcile_max_backoff_seconds: float = 21600.0

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
