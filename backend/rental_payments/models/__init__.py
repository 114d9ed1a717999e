"""ORM models package export."""

from rental_payments.models.activity import ReservationActivity
from rental_payments.models.deposit import DepositEvent, DepositEventKind, DepositStatus
from rental_payments.models.payment import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ProviderEvent,
    ProviderEventStatus,
)
from rental_payments.models.reservation import (
    TERMINAL_RESERVATION_STATUSES,
    Reservation,
    ReservationStatus,
)
from rental_payments.models.store import Customer, Store

__all__ = [
    "Customer",
    "DepositEvent",
    "DepositEventKind",
    "DepositStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentType",
    "ProviderEvent",
    "ProviderEventStatus",
    "Reservation",
    "ReservationActivity",
    "ReservationStatus",
    "Store",
    "TERMINAL_RESERVATION_STATUSES",
]
