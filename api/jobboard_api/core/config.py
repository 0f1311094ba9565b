from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "jobboard-api"
    environment: str = "dev"
    app_url: str = "http://localhost:3000"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    stripe_api_base: str = "https://api.stripe.com"
    stripe_timeout_seconds: float = 10.0
    stripe_max_network_retries: int = 2
    stripe_pro_price_id: str | None = None
    stripe_premium_price_id: str | None = None
    deferred_event_max_attempts: int = 8
    deferred_event_retry_base_seconds: int = 60
    deferred_event_retry_max_seconds: int = 3600
    deferred_event_lease_seconds: int = 120
    otel_enabled: bool = True
    otel_service_name: str = "jobboard-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JB_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
