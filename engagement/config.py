"""Configuration for challenge engagement tracking."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class EngagementSettings(BaseSettings):
    """Settings for the engagement state machine and reconciliation layer."""

    model_config = {"env_prefix": "ENGAGEMENT_", "case_sensitive": False}

    # Scoring
    default_penalty_points: int = Field(
        default=50,
        ge=0,
        description="Late penalty used when a challenge does not define one",
    )
    default_rework_penalty: int = Field(
        default=100,
        ge=0,
        description="Penalty deducted on rework when the reviewer gives no override",
    )

    # Remote writes
    remote_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for a single call to the authoritative store",
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per remote write before it is deferred",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first retry",
    )
    retry_max_delay_seconds: float = Field(
        default=4.0,
        ge=0,
        description="Upper bound for a single backoff delay",
    )
    retry_exponential_base: float = Field(
        default=2.0,
        ge=1,
        description="Backoff multiplier between attempts",
    )
    retry_jitter: bool = Field(
        default=False,
        description="Randomize backoff delays",
    )

    # Background sync
    sync_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Interval of the background flush/pull loop",
    )

    # Authoritative store
    remote_base_url: str = Field(
        default="http://localhost:8080/api",
        description="Base URL of the engagement REST authority",
    )
    remote_api_token: str | None = Field(
        default=None,
        description="Bearer token for the REST authority",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./engagement.db",
        description="SQLAlchemy async URL when the authority is a database",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements",
    )

    # Local cache
    local_cache_path: str | None = Field(
        default=None,
        description="JSON file the local cache and outbox persist to",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="Render logs as JSON")
    service_name: str = Field(default="engagement", description="Service name bound to logs")


@lru_cache
def get_settings() -> EngagementSettings:
    """Get cached engagement settings."""
    return EngagementSettings()
