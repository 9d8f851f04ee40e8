"""Application settings and configuration.

This module defines all configuration options for the rolegate service.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="rolegate", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Service-to-service authentication
    secret_key: str = Field(alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    service_token_audience: str = Field(
        default="rolegate-admin",
        alias="SERVICE_TOKEN_AUDIENCE",
    )

    # Database configuration
    database_url: str = Field(default="sqlite:///./rolegate.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    auto_create_tables: bool = Field(default=True, alias="AUTO_CREATE_TABLES")

    # Ephemeral keyed state (challenge nonces, pending interactive sessions)
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    nonce_backend: Literal["redis", "memory"] = Field(default="redis", alias="NONCE_BACKEND")
    nonce_ttl_seconds: int = Field(default=300, alias="NONCE_TTL_SECONDS")

    # EIP-712 domain the wallet frontend signs against
    typed_data_domain_name: str = Field(default="rolegate", alias="TYPED_DATA_DOMAIN_NAME")
    typed_data_domain_version: str = Field(default="1", alias="TYPED_DATA_DOMAIN_VERSION")
    typed_data_chain_id: int = Field(default=1, alias="TYPED_DATA_CHAIN_ID")

    # Asset ownership index
    asset_api_base_url: str = Field(
        default="http://localhost:8080",
        alias="ASSET_API_BASE_URL",
    )
    asset_api_key: str | None = Field(default=None, alias="ASSET_API_KEY")
    asset_http_timeout_seconds: float = Field(
        default=10.0,
        alias="ASSET_HTTP_TIMEOUT_SECONDS",
    )

    # Chat platform REST API used for role mutation
    platform_api_base_url: str = Field(
        default="https://discord.com/api/v10",
        alias="PLATFORM_API_BASE_URL",
    )
    platform_bot_token: str | None = Field(default=None, alias="PLATFORM_BOT_TOKEN")
    platform_http_timeout_seconds: float = Field(
        default=10.0,
        alias="PLATFORM_HTTP_TIMEOUT_SECONDS",
    )

    # Scheduled role reconciliation
    reconcile_enabled: bool = Field(default=True, alias="RECONCILE_ENABLED")
    reconcile_interval_seconds: float = Field(
        default=3600.0,
        alias="RECONCILE_INTERVAL_SECONDS",
    )
    reconcile_page_size: int = Field(default=10, alias="RECONCILE_PAGE_SIZE")
    reconcile_page_delay_seconds: float = Field(
        default=1.0,
        alias="RECONCILE_PAGE_DELAY_SECONDS",
    )
    reconcile_row_timeout_seconds: float = Field(
        default=30.0,
        alias="RECONCILE_ROW_TIMEOUT_SECONDS",
    )
    reconcile_user_delay_seconds: float = Field(
        default=0.5,
        alias="RECONCILE_USER_DELAY_SECONDS",
    )

    # CORS configuration for the wallet frontend
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
    )

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
    def typed_data_domain(self) -> dict[str, object]:
        """Return the EIP-712 domain separator fields."""
        return {
            "name": self.typed_data_domain_name,
            "version": self.typed_data_domain_version,
            "chainId": self.typed_data_chain_id,
        }


settings = Settings()  # type: ignore[call-arg]
