"""Hosted checkout sessions for rental payment and dashboard payment requests."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.core.errors import (
    ActionResult,
    InvalidState,
    PaymentsError,
    ProviderUnavailable,
    ValidationError,
)
from rental_payments.core.money import from_minor_units, quantize_amount, to_minor_units
from rental_payments.core.settings import get_payment_settings
from rental_payments.integrations import CheckoutLineItem, GatewayProvider
from rental_payments.models import (
    TERMINAL_RESERVATION_STATUSES,
    DepositEventKind,
    PaymentType,
    Reservation,
    ReservationStatus,
)
from rental_payments.models.mixins import utcnow
from rental_payments.services import (
    audit_service,
    deposit_service,
    domain_events,
    ledger_service,
    reservation_service,
    store_service,
)
from rental_payments.services.locks import load_reservation

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_TTL = timedelta(minutes=30)
PAYMENT_REQUEST_TTL = timedelta(hours=24)

RENTAL_CHECKOUT_TYPE = "rental"
PAYMENT_REQUEST_TYPE = "payment_request"


@dataclass(frozen=True, slots=True)
class CheckoutItem:
    """A priced line shown on the hosted checkout page."""

    name: str
    unit_amount: Decimal
    quantity: int = 1
    description: str | None = None


def _line_items(items: list[CheckoutItem], currency: str) -> list[CheckoutLineItem]:
    if not items:
        raise ValidationError("Checkout needs at least one line item", code="empty_checkout")
    lines = []
    for item in items:
        if item.quantity <= 0:
            raise ValidationError(f"Invalid quantity for {item.name!r}", code="invalid_quantity")
        unit_amount = quantize_amount(item.unit_amount, currency)
        if unit_amount <= 0:
            raise ValidationError(f"Invalid amount for {item.name!r}", code="invalid_amount")
        lines.append(
            CheckoutLineItem(
                name=item.name,
                unit_amount=to_minor_units(unit_amount, currency),
                quantity=item.quantity,
                description=item.description,
            )
        )
    return lines


def _application_fee(lines: list[CheckoutLineItem]) -> int | None:
    percent = get_payment_settings().platform_fee_percent
    if percent <= 0:
        return None
    total = sum(line.unit_amount * line.quantity for line in lines)
    fee = int((Decimal(total) * percent / Decimal(100)).to_integral_value())
    return fee or None


def _urls(reservation: Reservation, success_url: str | None, cancel_url: str | None) -> tuple[str, str]:
    base_url = get_payment_settings().public_app_url.rstrip("/")
    store_path = f"{base_url}/{reservation.store.slug}"
    return (
        success_url or f"{store_path}/checkout/success?reservation={reservation.id}",
        cancel_url or f"{store_path}/checkout?reservation={reservation.id}&cancelled=1",
    )


async def _open_session(
    session: AsyncSession,
    reservation: Reservation,
    *,
    gateways: GatewayProvider,
    items: list[CheckoutItem],
    checkout_type: str,
    ttl: timedelta,
    save_payment_method: bool,
    success_url: str | None,
    cancel_url: str | None,
    actor: str | None,
) -> ActionResult:
    if reservation.status in TERMINAL_RESERVATION_STATUSES:
        raise InvalidState("Reservation is closed", code="reservation_closed")
    currency = store_service.reservation_currency(reservation)
    lines = _line_items(items, currency)
    gateway = store_service.gateway_for_store(gateways, reservation.store)
    success, cancel = _urls(reservation, success_url, cancel_url)
    expires_at = utcnow() + ttl

    checkout = await gateway.create_checkout_session(
        line_items=lines,
        currency=currency,
        customer_email=reservation.customer.email if reservation.customer else None,
        success_url=success,
        cancel_url=cancel,
        expires_at=expires_at,
        metadata={
            "reservation_id": str(reservation.id),
            "reservation_number": reservation.number,
            "deposit_amount": str(to_minor_units(reservation.deposit_amount, currency)),
            "type": checkout_type,
        },
        save_payment_method=save_payment_method,
        application_fee=_application_fee(lines),
        locale=store_service.checkout_locale(reservation),
    )
    audit_service.record_activity(
        session,
        activity_type=f"checkout.{checkout_type}_created",
        reservation=reservation,
        payload={
            "session_id": checkout.id,
            "amount": str(from_minor_units(checkout.amount_total, currency))
            if checkout.amount_total
            else None,
            "expires_at": expires_at.isoformat(),
        },
        actor=actor,
    )
    await session.commit()
    return ActionResult.ok(
        session_id=checkout.id,
        url=checkout.url,
        expires_at=expires_at.isoformat(),
    )


async def create_rental_checkout(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    gateways: GatewayProvider,
    line_items: list[CheckoutItem] | None = None,
    success_url: str | None = None,
    cancel_url: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Open the customer's initial checkout.

    No payment row is written here; the rental payment is recorded only when
    the provider reports the session as completed.
    """

    try:
        reservation = await load_reservation(session, reservation_id)
        items = line_items or [
            CheckoutItem(
                name=f"Reservation {reservation.number}",
                unit_amount=Decimal(reservation.subtotal_amount),
            )
        ]
        return await _open_session(
            session,
            reservation,
            gateways=gateways,
            items=items,
            checkout_type=RENTAL_CHECKOUT_TYPE,
            ttl=CHECKOUT_SESSION_TTL,
            save_payment_method=True,
            success_url=success_url,
            cancel_url=cancel_url,
            actor=actor,
        )
    except PaymentsError as exc:
        if isinstance(exc, ProviderUnavailable):
            logger.error("Checkout for reservation %s failed: %s", reservation_id, exc)
        return ActionResult.from_error(exc)


async def create_payment_request(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    gateways: GatewayProvider,
    amount: Decimal | None = None,
    description: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Dashboard-initiated request, defaulting to the outstanding rental balance."""

    try:
        reservation = await load_reservation(session, reservation_id)
        summary = ledger_service.summarize(reservation)
        requested = summary.rental_remaining if amount is None else amount
        requested = quantize_amount(requested, summary.currency)
        if requested <= 0:
            return ActionResult.fail("nothing_to_pay", "The rental is already paid")
        items = [
            CheckoutItem(
                name=description or f"Payment for reservation {reservation.number}",
                unit_amount=requested,
            )
        ]
        return await _open_session(
            session,
            reservation,
            gateways=gateways,
            items=items,
            checkout_type=PAYMENT_REQUEST_TYPE,
            ttl=PAYMENT_REQUEST_TTL,
            save_payment_method=False,
            success_url=None,
            cancel_url=None,
            actor=actor,
        )
    except PaymentsError as exc:
        return ActionResult.from_error(exc)


async def complete_checkout(
    session: AsyncSession,
    reservation: Reservation,
    *,
    gateways: GatewayProvider,
    session_id: str,
    payment_status: str | None,
    payment_intent: str | None,
    customer: str | None,
    amount_total: int,
    metadata: dict[str, str],
    occurred_at: datetime | None = None,
) -> str:
    """Apply ``checkout.session.completed`` to a locked reservation.

    Returns ``processed`` or ``duplicate``. The caller commits.
    """

    if payment_status not in (None, "paid", "no_payment_required"):
        audit_service.record_activity(
            session,
            activity_type="checkout.completed_unpaid",
            reservation=reservation,
            payload={"session_id": session_id, "payment_status": payment_status},
            actor="webhook",
        )
        return "processed"

    currency = store_service.reservation_currency(reservation)
    saved_method: str | None = None
    charge_ref: str | None = None
    if payment_intent:
        # Provider read first so an outage leaves nothing half-applied.
        gateway = store_service.gateway_for_store(gateways, reservation.store)
        intent = await gateway.retrieve_payment_intent(payment_intent)
        saved_method = intent.payment_method
        charge_ref = intent.latest_charge
        customer = customer or intent.customer

    payment, created = await ledger_service.ensure_gateway_payment(
        session,
        reservation,
        external_reference=session_id,
        payment_type=PaymentType.RENTAL,
        amount=from_minor_units(amount_total, currency),
        currency=currency,
        intent_ref=payment_intent,
        charge_ref=charge_ref,
        paid_at=occurred_at,
    )
    if not created:
        return "duplicate"

    if customer:
        reservation.provider_customer_ref = customer
        if reservation.customer is not None and not reservation.customer.stripe_customer_ref:
            reservation.customer.stripe_customer_ref = customer
    if saved_method:
        reservation.saved_payment_method_ref = saved_method

    audit_service.record_activity(
        session,
        activity_type="payment.received",
        reservation=reservation,
        payload={
            "session_id": session_id,
            "amount": str(payment.amount),
            "type": metadata.get("type", RENTAL_CHECKOUT_TYPE),
        },
        actor="webhook",
    )
    domain_events.enqueue(
        session, "rental.paid", reservation, amount=str(payment.amount), session_id=session_id
    )

    checkout_type = metadata.get("type", RENTAL_CHECKOUT_TYPE)
    if checkout_type == RENTAL_CHECKOUT_TYPE:
        if reservation.status is ReservationStatus.PENDING:
            reservation_service.apply_transition(
                session, reservation, ReservationStatus.CONFIRMED, actor="webhook"
            )
        if Decimal(reservation.deposit_amount) > 0:
            await deposit_service.apply_signal(
                session,
                reservation,
                event_id=f"{session_id}:requested",
                kind=DepositEventKind.REQUESTED,
                occurred_at=occurred_at,
                actor="webhook",
            )
            if reservation.saved_payment_method_ref and reservation.provider_customer_ref:
                await deposit_service.apply_signal(
                    session,
                    reservation,
                    event_id=f"{session_id}:card_saved",
                    kind=DepositEventKind.CARD_SAVED,
                    occurred_at=occurred_at,
                    actor="webhook",
                )
    return "processed"


def expire_checkout(
    session: AsyncSession, reservation: Reservation, *, session_id: str, metadata: dict[str, str]
) -> str:
    """An abandoned session has no ledger effect."""
    audit_service.record_activity(
        session,
        activity_type="checkout.expired",
        reservation=reservation,
        payload={"session_id": session_id, "type": metadata.get("type")},
        actor="webhook",
    )
    return "processed"


__all__ = [
    "CHECKOUT_SESSION_TTL",
    "CheckoutItem",
    "PAYMENT_REQUEST_TTL",
    "complete_checkout",
    "create_payment_request",
    "create_rental_checkout",
    "expire_checkout",
]
