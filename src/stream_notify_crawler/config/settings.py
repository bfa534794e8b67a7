"""Application settings loaded from environment variables.

Uses Pydantic Settings v2 for validated, type-safe configuration.
All credentials and secrets are accessed exclusively through this module;
never call ``os.getenv`` directly elsewhere in the codebase.

Usage::

    from stream_notify_crawler.config.settings import get_settings

    settings = get_settings()
    interval = settings.poll_interval_seconds
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Crawler configuration backed by environment variables and an optional .env file.

    Only ``database_url`` is required.  Platform credentials default to empty
    values; a platform whose credentials are missing is simply not monitored.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    database_url: str
    """Async-compatible DSN, e.g. ``postgresql+asyncpg://user:pw@localhost/streams``."""

    database_connect_timeout_seconds: float = Field(default=30.0, gt=0)
    """Timeout for establishing a database connection."""

    database_command_timeout_seconds: float = Field(default=60.0, gt=0)
    """Timeout applied to every repository call made by the crawler."""

    # ------------------------------------------------------------------
    # Redis broker
    # ------------------------------------------------------------------

    redis_url: str = "redis://localhost:6379/0"
    """Redis connection URL used for pub/sub event broadcasting."""

    redis_key_prefix: str = ""
    """Optional prefix prepended to every published channel name."""

    redis_socket_timeout_seconds: float = Field(default=5.0, gt=0)
    """Connect and read timeout for broker calls."""

    # ------------------------------------------------------------------
    # Platform credentials and budgets
    # ------------------------------------------------------------------

    youtube_api_keys: Annotated[list[str], NoDecode] = []
    """YouTube Data API v3 keys.  The daily budget scales with the key count."""

    youtube_quota_limit: int = Field(default=10_000, gt=0)
    """Daily quota units per YouTube API key."""

    twitch_client_id: str = ""
    twitch_client_secret: str = ""
    twitch_quota_limit: int = Field(default=800, gt=0)
    """Helix points per quota window."""

    twitch_quota_window_seconds: int = Field(default=60, gt=0)

    twitcasting_client_id: str = ""
    twitcasting_client_secret: str = ""
    twitcasting_quota_limit: int = Field(default=1_000, gt=0)
    """Requests per hour allowed by the TwitCasting API."""

    twitcasting_quota_window_seconds: int = Field(default=3_600, gt=0)

    twitter_bearer_token: str = ""
    twitter_quota_limit: int = Field(default=75, gt=0)
    """Requests per 15-minute window for the Spaces lookup endpoint."""

    twitter_quota_window_seconds: int = Field(default=900, gt=0)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    poll_interval_seconds: float = Field(default=30.0, gt=0)
    """Delay between poll cycles."""

    maintenance_interval_seconds: float = Field(default=600.0, gt=0)
    """Delay between maintenance passes (quota reset, cleanup, probe)."""

    max_retry_attempts: int = Field(default=3, ge=0)
    """Retries for transient platform errors within one poll cycle."""

    retry_delay_seconds: float = Field(default=5.0, ge=0)
    """Delay between transient-error retries."""

    batch_size: int = Field(default=50, gt=0)
    """Maximum number of ids per batched platform lookup."""

    http_timeout_seconds: float = Field(default=15.0, gt=0)
    """Per-request timeout for platform API calls."""

    shutdown_grace_seconds: float = Field(default=10.0, ge=0)
    """Time in-flight loop iterations get to finish before cancellation."""

    monitor_stop_timeout_seconds: float = Field(default=5.0, gt=0)
    """Timeout for stopping one platform monitor."""

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    updated_viewer_threshold: int = Field(default=1, ge=1)
    """Minimum absolute viewer-count change that produces an Updated event."""

    stale_channel_threshold: int = Field(default=3, ge=1)
    """Consecutive "not found" lookups before a tracked channel is deactivated."""

    stream_record_retention_hours: int = Field(default=24, gt=0)
    """Ended stream records older than this are pruned from memory."""

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    health_check_timeout_seconds: float = Field(default=30.0, gt=0)
    """Timeout applied to each dependency probe of the health check."""

    health_stale_cycles: int = Field(default=3, ge=1)
    """A monitor with no successful poll in this many cycles is Unhealthy."""

    health_error_streak: int = Field(default=5, ge=1)
    """Consecutive failures (monitor polls or broker publishes) that mark Unhealthy."""

    # ------------------------------------------------------------------
    # Application behaviour
    # ------------------------------------------------------------------

    app_name: str = "Stream Notify Crawler"
    log_level: str = "INFO"
    """Logging verbosity.  One of: DEBUG, INFO, WARNING, ERROR, CRITICAL."""

    owner_notify_channel: Optional[str] = None
    """Broker channel suffix used to notify operators about probe results."""

    @field_validator("youtube_api_keys", mode="before")
    @classmethod
    def _split_api_keys(cls, value: object) -> object:
        """Accept a comma-separated string as well as a JSON list."""
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return json.loads(value)
            return [key.strip() for key in value.split(",") if key.strip()]
        return value

    @property
    def youtube_enabled(self) -> bool:
        return bool(self.youtube_api_keys)

    @property
    def twitch_enabled(self) -> bool:
        return bool(self.twitch_client_id and self.twitch_client_secret)

    @property
    def twitcasting_enabled(self) -> bool:
        return bool(self.twitcasting_client_id and self.twitcasting_client_secret)

    @property
    def twitter_enabled(self) -> bool:
        return bool(self.twitter_bearer_token)


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings singleton.

    In tests, call ``get_settings.cache_clear()`` after patching environment
    variables.
    """
    return Settings()
