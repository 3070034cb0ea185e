"""Application settings and configuration.

This module defines all configuration options for the Clinx Relay service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Clinx Relay", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    app_url: str = Field(default="http://localhost:8081", alias="APP_URL")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./clinx.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Bounded retry for transient store failures (connection resets, timeouts)
    store_retry_attempts: int = Field(default=3, alias="STORE_RETRY_ATTEMPTS")
    store_retry_base_delay_seconds: float = Field(
        default=0.1,
        alias="STORE_RETRY_BASE_DELAY_SECONDS",
    )

    # JWT authentication settings
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 7,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Realtime transport
    ws_auth_timeout_seconds: float = Field(default=5.0, alias="WS_AUTH_TIMEOUT_SECONDS")

    # Messaging
    message_page_default: int = Field(default=50, alias="MESSAGE_PAGE_DEFAULT")
    message_page_max: int = Field(default=100, alias="MESSAGE_PAGE_MAX")

    # Teams, invites and the membership capacity gate
    default_member_limit: int = Field(default=5, alias="DEFAULT_MEMBER_LIMIT")
    team_invite_ttl_hours: int = Field(default=168, alias="TEAM_INVITE_TTL_HOURS")
    team_invite_token_bytes: int = Field(default=32, alias="TEAM_INVITE_TOKEN_BYTES")
    group_invite_token_bytes: int = Field(default=16, alias="GROUP_INVITE_TOKEN_BYTES")
    invite_sweep_interval_seconds: float = Field(
        default=3600.0,
        alias="INVITE_SWEEP_INTERVAL_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
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
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()  # type: ignore[call-arg]
