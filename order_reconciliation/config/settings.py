"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum accepted age of a signed webhook (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook event ids are remembered"
    )

    # Gateway Configuration
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for a single gateway call (seconds)"
    )
    gateway_verify_max_attempts: int = Field(
        default=3, description="Attempts for transient verify failures"
    )
    refund_already_reversed_codes: str = Field(
        default="charge_already_refunded",
        description="Gateway error codes meaning the charge is already refunded (comma-separated)",
    )
    refund_manual_review_codes: str = Field(
        default="charge_disputed,insufficient_funds",
        description="Gateway error codes that need an operator before retrying (comma-separated)",
    )

    # Outbox / Notifications
    outbox_batch_size: int = Field(default=100, description="Outbox events per dispatch batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")
    outbox_max_attempts: int = Field(
        default=5, description="Delivery attempts before an outbox event is marked failed"
    )

    # Application Configuration
    app_name: str = Field(default="order-reconciliation", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("gateway_timeout_seconds")
    @classmethod
    def validate_gateway_timeout(cls, v: float) -> float:
        """Gateway calls must always be bounded."""
        if v <= 0:
            raise ValueError("Gateway timeout must be positive")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return _split_csv(self.allowed_origins)

    def get_refund_already_reversed_codes(self) -> List[str]:
        """Gateway error codes recognised as an already completed refund."""
        return _split_csv(self.refund_already_reversed_codes)

    def get_refund_manual_review_codes(self) -> List[str]:
        """Gateway error codes that require manual review."""
        return _split_csv(self.refund_manual_review_codes)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
