"""Reservation models."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rental_payments.db.base import Base
from rental_payments.models.deposit import DepositStatus
from rental_payments.models.mixins import TimestampMixin

if TYPE_CHECKING:
    from rental_payments.models.deposit import DepositEvent
    from rental_payments.models.payment import Payment
    from rental_payments.models.store import Customer, Store


class ReservationStatus(str, enum.Enum):
    """Lifecycle states for reservations."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_RESERVATION_STATUSES = frozenset(
    {
        ReservationStatus.COMPLETED,
        ReservationStatus.CANCELLED,
        ReservationStatus.REJECTED,
    }
)


class Reservation(TimestampMixin, Base):
    """A booking of one or more rental items for a customer."""

    __tablename__ = "reservations"
    __table_args__ = (
        UniqueConstraint("store_id", "number", name="ux_reservations_store_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False
    )
    number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus), default=ReservationStatus.PENDING, nullable=False
    )
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3))
    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Projection maintained by deposit_service; never assign directly elsewhere.
    deposit_status: Mapped[DepositStatus] = mapped_column(
        Enum(DepositStatus), default=DepositStatus.NONE, nullable=False
    )
    deposit_authorization_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    deposit_intent_ref: Mapped[str | None] = mapped_column(String(255), index=True)
    deposit_authorized_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    saved_payment_method_ref: Mapped[str | None] = mapped_column(String(255))
    provider_customer_ref: Mapped[str | None] = mapped_column(String(255))

    picked_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(String(1024))

    store: Mapped["Store"] = relationship("Store", back_populates="reservations")
    customer: Mapped["Customer"] = relationship("Customer")
    payments: Mapped[list["Payment"]] = relationship(
        "Payment", back_populates="reservation", order_by="Payment.created_at"
    )
    deposit_events: Mapped[list["DepositEvent"]] = relationship(
        "DepositEvent", back_populates="reservation", order_by="DepositEvent.created_at"
    )
