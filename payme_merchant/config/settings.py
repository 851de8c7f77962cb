"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AUTH_MODES = ("key", "signature")
CANCEL_PERFORMED_ORDER_STATUSES = ("REFUNDED", "CANCELLED")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Payme merchant credentials
    payme_merchant_login: str = Field(
        default="Paycom", description="Login expected in the Basic authorization header"
    )
    payme_merchant_key: str = Field(..., description="Merchant key issued by Payme")
    payme_auth_mode: str = Field(
        default="key",
        description="Password check: 'key' compares the merchant key, "
        "'signature' compares an HMAC-SHA256 of the request body",
    )
    payme_endpoint_path: str = Field(
        default="/payments/payme/callback", description="Merchant API webhook path"
    )

    # Order policy
    payme_allow_order_reattempt: bool = Field(
        default=True,
        description="Allow a new transaction for an order whose previous one was cancelled",
    )
    payme_cancel_performed_order_status: str = Field(
        default="REFUNDED",
        description="Order status after a performed transaction is cancelled",
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Store retries
    store_retry_max_attempts: int = Field(
        default=3, ge=1, description="Attempts for a request hitting transient store errors"
    )
    store_retry_base_delay: float = Field(
        default=0.05, ge=0, description="Base delay for retry backoff (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="payme-merchant", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("payme_merchant_key")
    @classmethod
    def validate_merchant_key(cls, v: str) -> str:
        """Reject an empty merchant key."""
        if not v.strip():
            raise ValueError("Payme merchant key must not be empty")
        return v

    @field_validator("payme_auth_mode")
    @classmethod
    def validate_auth_mode(cls, v: str) -> str:
        """Validate authorization mode."""
        if v.lower() not in AUTH_MODES:
            raise ValueError(f"Invalid auth mode. Must be one of: {list(AUTH_MODES)}")
        return v.lower()

    @field_validator("payme_cancel_performed_order_status")
    @classmethod
    def validate_cancel_performed_status(cls, v: str) -> str:
        """Validate the order status used after cancelling a performed transaction."""
        if v.upper() not in CANCEL_PERFORMED_ORDER_STATUSES:
            raise ValueError(
                f"Invalid order status. Must be one of: {list(CANCEL_PERFORMED_ORDER_STATUSES)}"
            )
        return v.upper()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the database URL points at SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
