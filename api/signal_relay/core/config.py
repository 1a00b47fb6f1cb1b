from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "signal-relay-api"
    environment: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    internal_api_token: str | None = None
    mirror_worker_token: str | None = None
    role_sync_worker_token: str | None = None
    job_max_attempts: int = 8
    job_retry_base_seconds: int = 5
    job_retry_max_seconds: int = 900
    claim_default_limit: int = 5
    claim_max_limit: int = 20
    legacy_role_guild_id: str | None = None
    legacy_role_role_id: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "signal-relay-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SR_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
