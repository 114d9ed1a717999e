"""Schemas for ledger entries and refunds."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from rental_payments.models.payment import PaymentMethod, PaymentStatus, PaymentType


class PaymentRead(BaseModel):
    id: UUID
    reservation_id: UUID
    type: PaymentType
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    currency: str
    external_reference: str | None = None
    notes: str | None = None
    created_at: datetime
    paid_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PaymentCreate(BaseModel):
    """Offline payment taken by staff."""

    type: Literal[PaymentType.RENTAL, PaymentType.DEPOSIT, PaymentType.DAMAGE]
    amount: Decimal = Field(gt=Decimal("0"))
    method: PaymentMethod
    paid_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=2000)


class DepositReturnCreate(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"))
    method: PaymentMethod
    notes: str | None = Field(default=None, max_length=2000)


class DamageCreate(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"))
    method: PaymentMethod
    notes: str = Field(min_length=1, max_length=2000)


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    reason: Literal["duplicate", "fraudulent", "requested_by_customer"] = (
        "requested_by_customer"
    )
