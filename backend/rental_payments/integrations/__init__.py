"""Integration shortcuts."""

from .stripe_client import (
    AccountStatus,
    CheckoutLineItem,
    CheckoutSession,
    GatewayProvider,
    PaymentGateway,
    PaymentIntent,
    Refund,
    StripeGatewayClient,
    StripeGatewayProvider,
    verify_webhook_signature,
)

__all__ = [
    "AccountStatus",
    "CheckoutLineItem",
    "CheckoutSession",
    "GatewayProvider",
    "PaymentGateway",
    "PaymentIntent",
    "Refund",
    "StripeGatewayClient",
    "StripeGatewayProvider",
    "verify_webhook_signature",
]
