"""Deposit authorization state and its event log."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rental_payments.db.base import Base
from rental_payments.models.mixins import utcnow

if TYPE_CHECKING:
    from rental_payments.models.reservation import Reservation


class DepositStatus(str, enum.Enum):
    """Lifecycle states for a reservation's security-deposit hold."""

    NONE = "none"
    PENDING = "pending"
    CARD_SAVED = "card_saved"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    RELEASED = "released"
    FAILED = "failed"


class DepositEventKind(str, enum.Enum):
    """Inputs to the deposit reducer."""

    REQUESTED = "requested"
    CARD_SAVED = "card_saved"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    RELEASED = "released"
    FAILED = "failed"


class DepositEvent(Base):
    """Append-only record of every event offered to the deposit reducer."""

    __tablename__ = "deposit_events"
    __table_args__ = (
        Index(
            "ux_deposit_events_reservation_applied_event",
            "reservation_id",
            "event_id",
            unique=True,
            sqlite_where=text("applied"),
            postgresql_where=text("applied"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    reservation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[DepositEventKind] = mapped_column(Enum(DepositEventKind), nullable=False)
    from_status: Mapped[DepositStatus] = mapped_column(Enum(DepositStatus), nullable=False)
    to_status: Mapped[DepositStatus] = mapped_column(Enum(DepositStatus), nullable=False)
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    reservation: Mapped["Reservation"] = relationship(
        "Reservation", back_populates="deposit_events"
    )
