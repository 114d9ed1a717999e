"""Service layer exports."""
from rental_payments.services import (
    checkout_service,
    deposit_service,
    ledger_service,
    reservation_service,
    store_service,
    webhook_service,
)

__all__ = [
    "checkout_service",
    "deposit_service",
    "ledger_service",
    "reservation_service",
    "store_service",
    "webhook_service",
]
