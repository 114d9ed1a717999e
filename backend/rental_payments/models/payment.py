"""Payment ledger and provider webhook inbox models."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from rental_payments.db.base import Base
from rental_payments.models.mixins import TimestampMixin, utcnow

if TYPE_CHECKING:
    from rental_payments.models.reservation import Reservation


JSONB_TYPE = JSONB(astext_type=Text()).with_variant(JSON(), "sqlite")


class PaymentType(str, enum.Enum):
    RENTAL = "rental"
    DEPOSIT = "deposit"
    DEPOSIT_RETURN = "deposit_return"
    DAMAGE = "damage"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "gateway"
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHECK = "check"
    OTHER = "other"


class PaymentStatus(str, enum.Enum):
    """Ledger states; only reconciliation moves a row between them."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(TimestampMixin, Base):
    """One money movement attached to a reservation.

    Rows are append-only: reconciliation may update ``status``, but
    ``amount`` and ``type`` never change after insert.
    """

    __tablename__ = "payments"

    __table_args__ = (
        Index(
            "ux_payments_external_reference",
            "external_reference",
            unique=True,
            sqlite_where=text("external_reference IS NOT NULL"),
            postgresql_where=text("external_reference IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    reservation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("reservations.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    type: Mapped[PaymentType] = mapped_column(Enum(PaymentType), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String(255))
    provider_intent_ref: Mapped[str | None] = mapped_column(String(255), index=True)
    provider_charge_ref: Mapped[str | None] = mapped_column(String(255), index=True)
    notes: Mapped[str | None] = mapped_column(Text())
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    reservation: Mapped["Reservation"] = relationship(
        "Reservation", back_populates="payments"
    )


class ProviderEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    DROPPED = "dropped"


class ProviderEvent(Base):
    """Raw provider webhook events for auditing and idempotency."""

    __tablename__ = "provider_events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    provider_event_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    account_ref: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[ProviderEventStatus] = mapped_column(
        Enum(ProviderEventStatus), nullable=False, default=ProviderEventStatus.RECEIVED
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),  # type: ignore[arg-type]
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    raw: Mapped[dict[str, Any]] = mapped_column(JSONB_TYPE, nullable=False)
