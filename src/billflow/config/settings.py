"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Signing secret of the Stripe webhook endpoint (whsec_...)",
    )
    stripe_api_version: str = Field(
        default="2024-06-20",
        description="Pinned Stripe API version (invoice.payment_intent is expandable)",
    )
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="Maximum age of a webhook signature timestamp",
    )
    processor_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Upper bound for a single Stripe API call",
    )
    store_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Upper bound for a single subscription store call",
    )
    default_currency: str = Field(
        default="usd",
        min_length=3,
        max_length=3,
        description="Currency used when a payment intent request names none",
    )
    product_name: str = Field(
        default="LoadMaster",
        description="Product name used in payment intent descriptions",
    )
    plan_prices: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="Stripe price ids as JSON: {plan_id: {interval: price_id}}",
    )
    plan_amounts: dict[str, dict[str, int]] = Field(
        default_factory=dict,
        description="Plan amounts in minor units as JSON: {plan_id: {interval: amount}}",
    )
    portal_return_url: str = Field(
        default="http://localhost:5173/dashboard",
        description="Where the Stripe billing portal sends the customer back to",
    )
    webhook_server_port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="Port of the HTTP server (API and Stripe webhooks)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Stripe expects lowercase ISO currency codes."""
        return v.lower()


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
