"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")
    stripe_webhook_tolerance: int = Field(
        default=300, description="Max age of a Stripe webhook signature (seconds)"
    )

    # Razorpay Configuration
    razorpay_key_id: str = Field(..., description="Razorpay key id (rzp_test_...)")
    razorpay_key_secret: str = Field(..., description="Razorpay key secret")
    razorpay_webhook_secret: str = Field(..., description="Razorpay webhook secret")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Distributed lock timeout (seconds)")
    event_stream_name: str = Field(
        default="payment-events", description="Redis stream receiving domain events"
    )

    # Order Service
    order_service_url: str = Field(
        default="http://localhost:8001", description="Base URL of the order service"
    )
    order_service_timeout: float = Field(
        default=5.0, description="Order service request timeout (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="payment-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    default_page_size: int = Field(default=20, description="Default page size for listings")
    max_page_size: int = Field(default=100, description="Upper bound on page size")

    # Gateway calls
    gateway_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single gateway call (seconds)"
    )
    gateway_retry_attempts: int = Field(
        default=3, description="Max attempts for retryable gateway errors"
    )

    # Payment Processing
    min_payment_amount: Decimal = Field(default=Decimal("1"), description="Minimum payment amount")
    max_payment_amount: Decimal = Field(
        default=Decimal("10000000"), description="Maximum payment amount"
    )
    default_currency: str = Field(default="INR", description="Default currency")
    supported_currencies: str = Field(
        default="INR,USD,EUR,GBP", description="Supported currencies (comma-separated)"
    )
    intent_expiry_hours: int = Field(
        default=24, description="Hours an intent stays valid for idempotent replay"
    )
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )
    cache_ttl_payment_seconds: int = Field(
        default=300, description="TTL of cached payment details (seconds)"
    )
    webhook_event_retention_days: int = Field(
        default=7, description="How long processed webhook ids are kept"
    )
    webhook_processing_lease_seconds: int = Field(
        default=300,
        description="After this long an unfinished webhook claim may be taken over by a redelivery",
    )

    # Abandoned checkouts
    checkout_expiry_interval_minutes: int = Field(
        default=15, description="Minutes between sweeps for expired PENDING intents"
    )
    checkout_expiry_batch_size: int = Field(
        default=100, description="Expired intents closed per sweep"
    )

    # Reconciliation
    reconciliation_hour_utc: int = Field(
        default=2, description="Hour of day (UTC) the reconciliation worker runs"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
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

    @field_validator("reconciliation_hour_utc")
    @classmethod
    def validate_reconciliation_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("reconciliation_hour_utc must be between 0 and 23")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_supported_currencies(self) -> List[str]:
        """Parse supported currencies, upper-cased."""
        return [c.strip().upper() for c in self.supported_currencies.split(",") if c.strip()]

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
