"""Application settings and configuration.

This module defines all configuration options for the Encore Stage voting
service. Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    This class defines all configuration options for the vote ledger, change
    feed and trending scorer. Settings can be overridden via environment
    variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Encore Stage", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 30,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # "identified" requires a bearer token; "anonymous" also accepts X-Voter-Token.
    voter_policy: Literal["identified", "anonymous"] = Field(
        default="anonymous",
        alias="VOTER_POLICY",
    )

    # Database configuration
    database_url: str = Field(default="sqlite:///./encore.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    sqlite_busy_timeout_seconds: float = Field(
        default=5.0,
        alias="SQLITE_BUSY_TIMEOUT_SECONDS",
    )

    # Vote ledger fail-fast behaviour
    vote_max_retries: int = Field(default=5, alias="VOTE_MAX_RETRIES")
    vote_timeout_seconds: float = Field(default=3.0, alias="VOTE_TIMEOUT_SECONDS")
    vote_retry_backoff_seconds: float = Field(
        default=0.02,
        alias="VOTE_RETRY_BACKOFF_SECONDS",
    )
    max_batch_subjects: int = Field(default=200, alias="MAX_BATCH_SUBJECTS")

    # Change feed
    feed_backend: Literal["memory", "redis"] = Field(default="memory", alias="FEED_BACKEND")
    feed_max_workers: int = Field(default=4, alias="FEED_MAX_WORKERS")
    feed_stream_queue_size: int = Field(default=256, alias="FEED_STREAM_QUEUE_SIZE")
    feed_subscriber_inbox_size: int = Field(default=1024, alias="FEED_SUBSCRIBER_INBOX_SIZE")
    feed_keepalive_seconds: float = Field(default=15.0, alias="FEED_KEEPALIVE_SECONDS")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    redis_channel_prefix: str = Field(default="encore", alias="REDIS_CHANNEL_PREFIX")
    # Publishing happens on the vote path, so Redis calls must give up quickly.
    redis_socket_timeout_seconds: float = Field(default=1.0, alias="REDIS_SOCKET_TIMEOUT_SECONDS")
    redis_connect_timeout_seconds: float = Field(
        default=1.0,
        alias="REDIS_CONNECT_TIMEOUT_SECONDS",
    )

    # Trending score weights: net score, velocity, recency decay, popularity
    trending_weight_net: float = Field(default=1.0, alias="TRENDING_WEIGHT_NET")
    trending_weight_velocity: float = Field(default=2.0, alias="TRENDING_WEIGHT_VELOCITY")
    trending_weight_recency: float = Field(default=5.0, alias="TRENDING_WEIGHT_RECENCY")
    trending_weight_popularity: float = Field(
        default=0.1,
        alias="TRENDING_WEIGHT_POPULARITY",
    )
    trending_velocity_window_hours: float = Field(
        default=24.0,
        alias="TRENDING_VELOCITY_WINDOW_HOURS",
    )
    trending_half_life_hours: float = Field(default=48.0, alias="TRENDING_HALF_LIFE_HOURS")
    trending_refresh_enabled: bool = Field(default=True, alias="TRENDING_REFRESH_ENABLED")
    trending_refresh_interval_seconds: float = Field(
        default=60.0,
        alias="TRENDING_REFRESH_INTERVAL_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations and the vote ledger.

        Returns:
            Database URL compatible with synchronous database drivers
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def trending_weights(self) -> tuple[float, float, float, float]:
        """Return the trending weights as a ``(net, velocity, recency, popularity)`` tuple."""
        return (
            self.trending_weight_net,
            self.trending_weight_velocity,
            self.trending_weight_recency,
            self.trending_weight_popularity,
        )

    @property
    def requires_identified_voters(self) -> bool:
        """Return True when only authenticated voters may cast votes."""
        return self.voter_policy == "identified"


settings = Settings()  # type: ignore[call-arg]
