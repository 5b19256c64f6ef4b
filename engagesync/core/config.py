from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "/data/engagesync.db"

    # Remote platforms
    phoneburner_base_url: str = "https://www.phoneburner.com/rest/1"
    nocodb_base_url: str = "https://nocodb.example.com"
    nocodb_table_id: str = ""
    nocodb_api_token: str | None = None

    # Rate limiting and retries
    rate_limit_delay_ms: int = 500
    rate_limit_backoff_seconds: float = 2.0
    retry_backoff_seconds: float = 1.0
    max_retries: int = 3
    request_timeout_seconds: float = 30.0

    # Invocation limits
    time_budget_ms: int = 45000
    sync_lock_timeout_ms: int = 30000
    max_continuations: int = 200
    max_consecutive_failures: int = 3

    # Paging and batching
    contacts_page_size: int = 100
    sessions_page_size: int = 100
    nocodb_page_size: int = 100
    write_batch_size: int = 200
    link_batch_size: int = 500

    # Remote date windows
    usage_lookback_days: int = 90
    sessions_lookback_days: int = 180

    # Classification policy
    send_email_dm_threshold_seconds: int = 60
    internal_email_domains: list[str] = []

    # Scheduler
    stale_sync_minutes: int = 5
    drain_interval_seconds: int = 60
    sync_hour: int = 6
    tz: str = "Europe/London"
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
