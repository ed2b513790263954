from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "regtruth-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"

    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    job_max_attempts: int = 3
    job_backoff_base_seconds: int = 10
    job_lease_seconds: int = 300
    extract_concurrency: int = 2
    extract_rate_limit_max: int = 30
    extract_rate_limit_window_seconds: int = 60
    full_validation_lease_seconds: int = 1800
    dead_letter_alert_threshold: int = 10

    worker_id: str = "local-worker"
    worker_queues: str = "scheduled,discovery,extract,compose,review,arbiter,release"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100

    discovery_stagger_seconds: int = 60
    auto_approve_grace_hours: float = 24.0
    auto_approve_min_confidence: float = 0.90
    auto_approve_batch_size: int = 100
    conflict_sweep_batch_size: int = 10
    release_sweep_batch_size: int = 20
    decay_floor: float = 0.5
    arbitration_min_confidence: float = 0.8
    test_source_domains: str = "heartbeat,test,synthetic,debug"
    validation_artifacts_dir: str | None = None

    scheduler_timezone: str = "Europe/Zagreb"
    scheduler_tick_seconds: float = 30.0
    sweep_interval_minutes: int = 15
    auto_approve_interval_minutes: int = 60

    capabilities_base_url: str = "http://localhost:8100"
    capabilities_api_key: str | None = None
    capabilities_timeout_seconds: float = 60.0

    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0

    otel_enabled: bool = True
    otel_service_name: str = "regtruth"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RTL_", extra="ignore")

    def worker_queue_names(self) -> list[str]:
        return [name.strip() for name in self.worker_queues.split(",") if name.strip()]

    def test_source_domain_list(self) -> list[str]:
        return [domain.strip().lower() for domain in self.test_source_domains.split(",") if domain.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
