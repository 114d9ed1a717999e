"""Specialized settings adapters for integrations."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel

from rental_payments.core.config import get_settings


class PaymentSettings(BaseModel):
    """Slim view of payment-related configuration."""

    stripe_secret_key: str | None = None
    stripe_publishable_key: str | None = None
    stripe_connect_webhook_secret: str | None = None
    payments_webhook_verify: bool = True
    stripe_timeout_seconds: float = 20.0
    stripe_max_read_attempts: int = 3
    default_currency: str = "EUR"
    platform_fee_percent: Decimal = Decimal("0")
    public_app_url: str = "http://localhost:3000"


def get_payment_settings() -> PaymentSettings:
    """Return payment-specific configuration."""

    settings = get_settings()
    return PaymentSettings(
        stripe_secret_key=settings.stripe_secret_key or None,
        stripe_publishable_key=settings.stripe_publishable_key or None,
        stripe_connect_webhook_secret=settings.stripe_connect_webhook_secret or None,
        payments_webhook_verify=settings.payments_webhook_verify,
        stripe_timeout_seconds=settings.stripe_timeout_seconds,
        stripe_max_read_attempts=settings.stripe_max_read_attempts,
        default_currency=settings.default_currency,
        platform_fee_percent=settings.platform_fee_percent,
        public_app_url=settings.public_app_url,
    )
