import logging
from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)

DEFAULT_PLAYBOOKS_DIR = str(Path(__file__).resolve().parent.parent / "playbooks")


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/adpulse"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql://, asyncpg needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values
    secret_key: str = "change-me-in-production"
    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    encryption_key: str = ""

    # Meta Graph API
    meta_api_version: str = "v21.0"
    meta_graph_url: str = "https://graph.facebook.com"
    meta_page_limit: int = 500

    # Google Ads API
    google_ads_api_version: str = "v17"
    google_ads_developer_token: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    google_login_customer_id: str = ""

    upstream_timeout_seconds: float = 30.0
    upstream_max_pages: int = 200

    # Rate limits per (provider, ad account)
    meta_requests_per_minute: int = 60
    meta_requests_per_hour: int = 200
    google_requests_per_minute: int = 100
    google_requests_per_hour: int = 625
    max_concurrent_jobs_per_provider: int = 2
    # Delay before a job turned away by a full provider is picked up again
    concurrency_retry_seconds: float = 30.0

    # Currency
    reporting_currency_default: str = "USD"
    exchange_rate_url: str = "https://api.exchangerate-api.com/v4/latest/USD"
    exchange_rate_ttl_seconds: int = 3600

    # Insights
    insights_max_range_days: int = 90
    full_insights_lookback_days: int = 30
    delta_insights_lookback_days: int = 1

    # Recommendations
    playbooks_dir: str = DEFAULT_PLAYBOOKS_DIR
    recommendation_lookback_days: int = 30
    recommendation_expiry_days: int = 14

    # Scheduler (standard 5-field crontab patterns)
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    entity_sync_cron: str = "0 2 * * *"
    full_insights_cron: str = "0 3 * * *"
    delta_insights_cron: str = "*/30 * * * *"
    recommendations_cron: str = "5 4 * * *"

    # Worker runtime
    worker_poll_interval_seconds: float = 2.0
    job_stall_timeout_seconds: int = 600
    job_max_stalled_count: int = 2
    worker_shutdown_timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]

    def requests_per_minute(self, provider: str) -> int:
        return self.google_requests_per_minute if provider == "google" else self.meta_requests_per_minute

    def requests_per_hour(self, provider: str) -> int:
        return self.google_requests_per_hour if provider == "google" else self.meta_requests_per_hour


@lru_cache
def get_settings() -> Settings:
    return Settings()
