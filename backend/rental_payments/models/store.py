"""Store (merchant) and customer models."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rental_payments.db.base import Base
from rental_payments.models.mixins import TimestampMixin

if TYPE_CHECKING:
    from rental_payments.models.reservation import Reservation


class Store(TimestampMixin, Base):
    """A merchant taking bookings through its own provider sub-account."""

    __tablename__ = "stores"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    country: Mapped[str | None] = mapped_column(String(2))
    currency: Mapped[str | None] = mapped_column(String(3))
    settings: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    stripe_account_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    details_submitted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    reservations: Mapped[list["Reservation"]] = relationship(
        "Reservation", back_populates="store"
    )
    customers: Mapped[list["Customer"]] = relationship(
        "Customer", back_populates="store"
    )


class Customer(TimestampMixin, Base):
    """A store's customer; the provider customer reference is recorded here."""

    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(40))
    stripe_customer_ref: Mapped[str | None] = mapped_column(String(255))

    store: Mapped["Store"] = relationship("Store", back_populates="customers")
