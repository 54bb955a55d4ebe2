import os
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SERIES_PARTIAL_POLICIES = ("any_missing", "tracked_seasons", "ignore")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_user: str = os.getenv("POSTGRES_USER", "marquee")
    db_password: str = os.getenv("POSTGRES_PASSWORD", "marquee")
    db_name: str = os.getenv("POSTGRES_DB", "marquee")
    database_url: str = f"postgresql+psycopg2://{os.getenv('POSTGRES_USER', 'marquee')}:{os.getenv('POSTGRES_PASSWORD', 'marquee')}@db:5432/{os.getenv('POSTGRES_DB', 'marquee')}"
    redis_url: str = "redis://redis:6379/0"

    # Request reconciliation
    request_sync_interval_minutes: int = 5
    request_sync_disabled: bool = False
    request_sync_batch_size: int = 100
    request_sync_lock_ttl_seconds: int = 900
    queue_page_size: int = 200
    # any_missing | tracked_seasons | ignore
    series_partial_policy: str = "any_missing"

    # External service plumbing
    service_cache_ttl_seconds: int = 5
    list_cache_ttl_seconds: int = 30
    profile_cache_ttl_seconds: int = 300
    service_timeout_seconds: float = 20.0

    # Watchlist import
    watchlist_sync_interval_minutes: int = 30
    trakt_client_id: str = ""
    trakt_client_secret: str = ""
    trakt_redirect_uri: str = "http://localhost:5173/auth/trakt/callback"
    trakt_refresh_margin_seconds: int = 300
    tmdb_api_key: str = ""

    # Operator alerts
    alert_cooldown_seconds: int = 3600
    health_check_interval_minutes: int = 5

    @field_validator("request_sync_interval_minutes", "watchlist_sync_interval_minutes", "health_check_interval_minutes")
    @classmethod
    def _at_least_one_minute(cls, v: int) -> int:
        return max(1, int(v))

    @field_validator("series_partial_policy")
    @classmethod
    def _known_policy(cls, v: str) -> str:
        v = (v or "").strip().lower()
        return v if v in SERIES_PARTIAL_POLICIES else "any_missing"


settings = Settings()
