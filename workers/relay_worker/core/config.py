from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    worker_id: str = "local-relay-worker"
    log_level: str = "INFO"
    mirror_worker_token: str | None = None
    role_sync_worker_token: str | None = None
    # "package.module:callable" import paths; a queue without a handler is not polled.
    mirror_handler: str | None = None
    role_sync_handler: str | None = None
    claim_limit: int = 5
    request_timeout_seconds: float = 10.0
    wake_fallback_min_seconds: float = 1.0
    wake_fallback_max_seconds: float = 5.0
    wake_max_sleep_seconds: float = 30.0
    max_backoff_seconds: float = 15.0
    otel_enabled: bool = True
    otel_service_name: str = "signal-relay-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SR_WORKER_", extra="ignore")

    @model_validator(mode="after")
    def _check_wake_bounds(self) -> "Settings":
        if self.wake_fallback_max_seconds < self.wake_fallback_min_seconds:
            raise ValueError("wake_fallback_max_seconds must be >= wake_fallback_min_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
