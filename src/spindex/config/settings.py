"""Application settings loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SpotifySettings(BaseSettings):
    """Spotify Web API credentials and endpoints.

    Only the client-credentials flow is used, so no redirect URI or user
    tokens are needed here.
    """

    model_config = SettingsConfigDict(
        env_prefix="SPOTIFY_", env_file=".env", extra="ignore"
    )

    client_id: str = ""
    client_secret: str = ""
    api_base_url: str = "https://api.spotify.com/v1"
    token_url: str = "https://accounts.spotify.com/api/token"  # nosec B105 - public endpoint URL
    market: str = "US"
    request_timeout: float = Field(default=10.0, gt=0)

    @property
    def is_configured(self) -> bool:
        """Check if both client id and secret are set."""
        return bool(self.client_id.strip() and self.client_secret.strip())


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_", env_file=".env", extra="ignore"
    )

    url: str = "sqlite+aiosqlite:///./spindex.db"
    echo: bool = False
    pool_pre_ping: bool = True
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    # create_all() on startup for a zero-setup first run; turn off once Alembic owns the schema
    auto_create_tables: bool = True


# Hey future me - these are the knobs for the detail page read-through! The defaults mirror
# what we run in production: 6h freshness for top tracks, 8s budget for a synchronous refresh,
# 60s cooldown after a good background sync and 5min after a failed one.
class SyncSettings(BaseSettings):
    """Freshness windows, timeouts and cooldowns for the sync orchestrator."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", env_file=".env", extra="ignore")

    track_freshness_hours: float = 6.0
    min_cached_tracks: int = 5
    detail_refresh_timeout: float = 8.0
    artist_record_timeout: float = 10.0
    success_cooldown_seconds: float = 60.0
    failure_cooldown_seconds: float = 300.0
    cooldown_max_entries: int = 10_000
    snapshot_history_limit: int = 120


class CronSettings(BaseSettings):
    """Snapshot cron job settings."""

    model_config = SettingsConfigDict(env_prefix="CRON_", env_file=".env", extra="ignore")

    secret: str | None = None
    lock_ttl_minutes: int = 30
    ingest_batch_size: int = 100
    track_lookback_days: int = 90
    track_batch_size: int = 500
    # 0 disables the in-process worker; the job is then triggered via the HTTP endpoint.
    interval_seconds: int = 0


class ObservabilitySettings(BaseSettings):
    """Logging output settings."""

    model_config = SettingsConfigDict(
        env_prefix="OBSERVABILITY_", env_file=".env", extra="ignore"
    )

    log_json_format: bool = False


class ApiSettings(BaseSettings):
    """Public API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", env_file=".env", extra="ignore")

    # Optional X-API-Key gate for search/resolve/event routes.
    request_key: str | None = None
    # X-Admin-Key for /api/debug in production; unset disables those routes there.
    admin_debug_key: str | None = None


class Settings(BaseSettings):
    """Top-level settings grouping all configuration sections."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "spindex"
    environment: str = "development"
    log_level: str = "INFO"

    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    cron: CronSettings = Field(default_factory=CronSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() == "production"

    def _get_sqlite_db_path(self) -> Path | None:
        """Return the SQLite database file path, or None for other backends."""
        url = self.database.url
        if not url.startswith("sqlite") or ":memory:" in url:
            return None
        _, _, path = url.partition(":///")
        return Path(path) if path else None


# Hey future me - lru_cache makes this a process-wide singleton. Tests that need different
# values should build Settings(...) directly instead of monkeypatching env and calling this.
@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
