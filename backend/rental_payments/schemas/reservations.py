"""Schemas for checkout, lifecycle and deposit actions on a reservation."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from rental_payments.services.deposit_service import AuthorizationMode
from rental_payments.services.reservation_service import StatusAction


class CheckoutLineItemIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    unit_amount: Decimal = Field(gt=Decimal("0"))
    quantity: int = Field(default=1, ge=1)
    description: str | None = Field(default=None, max_length=500)


class CheckoutCreate(BaseModel):
    line_items: list[CheckoutLineItemIn] | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class PaymentRequestCreate(BaseModel):
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    description: str | None = Field(default=None, max_length=255)


class StatusChangeRequest(BaseModel):
    action: StatusAction
    acknowledge_warnings: bool = False
    reason: str | None = Field(default=None, max_length=1024)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1024)


class DepositAuthorizeRequest(BaseModel):
    mode: AuthorizationMode = AuthorizationMode.INTERACTIVE
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class DepositCaptureRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))


class DepositReleaseRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
