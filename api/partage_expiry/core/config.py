from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "dodopartage-expiration"
    environment: str = "dev"
    store_api_url: str = "https://api.airtable.com/v0"
    store_base_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DODO_STORE_BASE_ID", "AIRTABLE_BASE_ID"),
    )
    store_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DODO_STORE_TOKEN", "AIRTABLE_TOKEN"),
    )
    store_table: str = "DodoPartage Announcements"
    store_page_size: int = 100
    store_timeout_seconds: float = 10.0
    store_reason_field: str | None = None
    store_verify_status_before_update: bool = False
    cron_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DODO_CRON_SECRET", "CRON_SECRET", "VERCEL_CRON_SECRET"),
    )
    expiration_pause_every: int = 10
    expiration_pause_seconds: float = 1.0
    expiration_timeout_seconds: float = 270.0
    otel_enabled: bool = True
    otel_service_name: str = "dodopartage-expiration"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DODO_", extra="ignore", populate_by_name=True)


@lru_cache
def get_settings() -> Settings:
    return Settings()
