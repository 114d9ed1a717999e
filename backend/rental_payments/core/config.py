"""Application configuration via pydantic settings."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from typing import Any

from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed application configuration."""

    app_env: str = Field("local", alias="APP_ENV")
    app_name: str = "Rental Payments API"
    api_v1_prefix: str = "/api/v1"
    public_app_url: str = Field("http://localhost:3000", alias="PUBLIC_APP_URL")

    database_url: str = Field(..., alias="DATABASE_URL")
    sync_database_url: str | None = Field(default=None, alias="SYNC_DATABASE_URL")

    stripe_publishable_key: str | None = Field(
        default=None, alias="STRIPE_PUBLISHABLE_KEY"
    )
    stripe_secret_key: str | None = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_connect_webhook_secret: str | None = Field(
        default=None, alias="STRIPE_CONNECT_WEBHOOK_SECRET"
    )
    stripe_timeout_seconds: float = Field(20.0, alias="STRIPE_TIMEOUT_SECONDS")
    stripe_max_read_attempts: int = Field(3, alias="STRIPE_MAX_READ_ATTEMPTS")
    payments_webhook_verify: bool = Field(default=True, alias="PAYMENTS_WEBHOOK_VERIFY")

    default_currency: str = Field("EUR", alias="DEFAULT_CURRENCY")
    platform_fee_percent: Decimal = Field(Decimal("0"), alias="PLATFORM_FEE_PERCENT")

    deposit_expiry_sweep_enabled: bool = Field(
        default=False, alias="DEPOSIT_EXPIRY_SWEEP_ENABLED"
    )
    deposit_expiry_sweep_interval_seconds: int = Field(
        900, alias="DEPOSIT_EXPIRY_SWEEP_INTERVAL_SECONDS"
    )

    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        alias="CORS_ALLOW_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=False, alias="CORS_ALLOW_CREDENTIALS")

    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[3] / ".env",
        case_sensitive=False,
    )

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()  # type: ignore[call-arg]
