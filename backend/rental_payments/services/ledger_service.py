"""Payment ledger: summaries, gateway payment rows and manual dashboard entries."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.core.errors import (
    ActionResult,
    InvalidState,
    NotFound,
    PaymentsError,
    ValidationError,
)
from rental_payments.core.money import from_minor_units, quantize_amount, to_minor_units
from rental_payments.integrations import GatewayProvider
from rental_payments.models import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Reservation,
)
from rental_payments.models.mixins import utcnow
from rental_payments.services import audit_service, store_service
from rental_payments.services.domain_events import commit_and_publish
from rental_payments.services.locks import reservation_guard

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_MANUAL_TYPES = frozenset({PaymentType.RENTAL, PaymentType.DEPOSIT, PaymentType.DAMAGE})
_REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


@dataclass(frozen=True, slots=True)
class LedgerSummary:
    currency: str
    rental_amount: Decimal
    rental_paid: Decimal
    rental_remaining: Decimal
    deposit_amount: Decimal
    deposit_collected: Decimal
    deposit_returned: Decimal
    deposit_to_return: Decimal
    damages: Decimal

    def as_dict(self) -> dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items()}


def _completed_total(payments: list[Payment], payment_type: PaymentType) -> Decimal:
    return sum(
        (
            Decimal(payment.amount)
            for payment in payments
            if payment.type == payment_type and payment.status == PaymentStatus.COMPLETED
        ),
        _ZERO,
    )


def summarize(reservation: Reservation) -> LedgerSummary:
    """Totals over completed ledger rows; the rental portion is the subtotal."""

    payments = list(reservation.payments)
    rental_amount = Decimal(reservation.subtotal_amount)
    rental_paid = _completed_total(payments, PaymentType.RENTAL)
    collected = _completed_total(payments, PaymentType.DEPOSIT)
    returned = _completed_total(payments, PaymentType.DEPOSIT_RETURN)
    return LedgerSummary(
        currency=store_service.reservation_currency(reservation),
        rental_amount=rental_amount,
        rental_paid=rental_paid,
        rental_remaining=max(rental_amount - rental_paid, _ZERO),
        deposit_amount=Decimal(reservation.deposit_amount),
        deposit_collected=collected,
        deposit_returned=returned,
        deposit_to_return=max(collected - returned, _ZERO),
        damages=_completed_total(payments, PaymentType.DAMAGE),
    )


async def find_payment_by_reference(
    session: AsyncSession, external_reference: str
) -> Payment | None:
    stmt = select(Payment).where(Payment.external_reference == external_reference)
    return (await session.execute(stmt)).scalar_one_or_none()


async def ensure_gateway_payment(
    session: AsyncSession,
    reservation: Reservation,
    *,
    external_reference: str,
    payment_type: PaymentType,
    amount: Decimal,
    currency: str,
    intent_ref: str | None = None,
    charge_ref: str | None = None,
    paid_at: datetime | None = None,
) -> tuple[Payment, bool]:
    """Insert a completed gateway payment unless its reference already exists."""

    for payment in reservation.payments:
        if payment.external_reference == external_reference:
            return payment, False
    existing = await find_payment_by_reference(session, external_reference)
    if existing is not None:
        return existing, False

    payment = Payment(
        reservation_id=reservation.id,
        type=payment_type,
        method=PaymentMethod.GATEWAY,
        status=PaymentStatus.COMPLETED,
        amount=quantize_amount(amount, currency),
        currency=currency,
        external_reference=external_reference,
        provider_intent_ref=intent_ref,
        provider_charge_ref=charge_ref,
        paid_at=paid_at or utcnow(),
    )
    reservation.payments.append(payment)
    session.add(payment)
    return payment, True


def _validated_amount(amount: Decimal | str | int, currency: str) -> Decimal:
    value = quantize_amount(amount, currency)
    if value <= _ZERO:
        raise ValidationError("Amount must be positive", code="invalid_amount")
    return value


def _add_manual_payment(
    session: AsyncSession,
    reservation: Reservation,
    *,
    payment_type: PaymentType,
    amount: Decimal,
    method: PaymentMethod,
    paid_at: datetime | None,
    notes: str | None,
) -> Payment:
    payment = Payment(
        reservation_id=reservation.id,
        type=payment_type,
        method=method,
        status=PaymentStatus.COMPLETED,
        amount=amount,
        currency=store_service.reservation_currency(reservation),
        notes=notes,
        paid_at=paid_at or utcnow(),
    )
    reservation.payments.append(payment)
    session.add(payment)
    return payment


async def record_payment(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    payment_type: PaymentType,
    amount: Decimal,
    method: PaymentMethod,
    paid_at: datetime | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Record an offline rental, deposit or damage payment taken by staff."""

    try:
        async with reservation_guard(session, reservation_id) as reservation:
            if payment_type not in _MANUAL_TYPES:
                raise ValidationError(
                    "Use return_deposit for deposit returns", code="invalid_payment_type"
                )
            if method == PaymentMethod.GATEWAY:
                raise ValidationError(
                    "Gateway payments are recorded by reconciliation",
                    code="invalid_payment_method",
                )
            value = _validated_amount(amount, store_service.reservation_currency(reservation))
            payment = _add_manual_payment(
                session,
                reservation,
                payment_type=payment_type,
                amount=value,
                method=method,
                paid_at=paid_at,
                notes=notes,
            )
            audit_service.record_activity(
                session,
                activity_type="payment.recorded",
                reservation=reservation,
                payload={
                    "type": payment_type.value,
                    "method": method.value,
                    "amount": str(value),
                },
                actor=actor,
            )
            await commit_and_publish(session)
            return ActionResult.ok(payment_id=str(payment.id), amount=str(value))
    except PaymentsError as exc:
        return ActionResult.from_error(exc)


async def return_deposit(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    amount: Decimal,
    method: PaymentMethod,
    notes: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Give collected deposit money back; never touches ``deposit_status``."""

    try:
        async with reservation_guard(session, reservation_id) as reservation:
            summary = summarize(reservation)
            value = _validated_amount(amount, summary.currency)
            if value > summary.deposit_to_return:
                raise ValidationError(
                    f"Only {summary.deposit_to_return} of the deposit can be returned",
                    code="amount_exceeds_deposit",
                )
            payment = _add_manual_payment(
                session,
                reservation,
                payment_type=PaymentType.DEPOSIT_RETURN,
                amount=value,
                method=method,
                paid_at=None,
                notes=notes,
            )
            audit_service.record_activity(
                session,
                activity_type="deposit.returned",
                reservation=reservation,
                payload={"amount": str(value), "method": method.value},
                actor=actor,
            )
            await commit_and_publish(session)
            return ActionResult.ok(payment_id=str(payment.id), amount=str(value))
    except PaymentsError as exc:
        return ActionResult.from_error(exc)


async def record_damage(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    amount: Decimal,
    method: PaymentMethod,
    notes: str,
    actor: str | None = None,
) -> ActionResult:
    if not notes or not notes.strip():
        return ActionResult.fail("damage_description_required", "Describe the damage")
    return await record_payment(
        session,
        reservation_id=reservation_id,
        payment_type=PaymentType.DAMAGE,
        amount=amount,
        method=method,
        notes=notes.strip(),
        actor=actor,
    )


async def refund_payment(
    session: AsyncSession,
    *,
    payment_id: uuid.UUID,
    gateways: GatewayProvider,
    amount: Decimal | None = None,
    reason: str = "requested_by_customer",
    actor: str | None = None,
) -> ActionResult:
    """Ask the provider to refund a gateway payment.

    The row is marked refunded only when ``charge.refunded`` arrives.
    """

    payment = await session.get(Payment, payment_id)
    if payment is None:
        return ActionResult.from_error(NotFound("Payment not found"))
    reservation_id = payment.reservation_id
    try:
        async with reservation_guard(session, reservation_id) as reservation:
            payment = next((p for p in reservation.payments if p.id == payment_id), None)
            if payment is None:
                raise NotFound("Payment not found")
            if payment.method != PaymentMethod.GATEWAY or payment.status != PaymentStatus.COMPLETED:
                raise InvalidState(
                    "Only completed gateway payments can be refunded",
                    code="payment_not_refundable",
                )
            if reason not in _REFUND_REASONS:
                raise ValidationError(f"Unknown refund reason {reason!r}")
            refund_amount = None
            if amount is not None:
                refund_amount = _validated_amount(amount, payment.currency)
                if refund_amount > payment.amount:
                    raise ValidationError(
                        "Refund exceeds the payment amount", code="amount_exceeds_payment"
                    )

            gateway = store_service.gateway_for_store(gateways, reservation.store)
            charge_ref = payment.provider_charge_ref
            if charge_ref is None and payment.provider_intent_ref:
                intent = await gateway.retrieve_payment_intent(payment.provider_intent_ref)
                charge_ref = intent.latest_charge
                payment.provider_charge_ref = charge_ref
            if charge_ref is None:
                raise InvalidState("Payment has no provider charge", code="payment_not_refundable")

            refund = await gateway.create_refund(
                charge_ref,
                amount=(
                    to_minor_units(refund_amount, payment.currency)
                    if refund_amount is not None
                    else None
                ),
                reason=reason,
                idempotency_seed=f"refund_{payment.id.hex}_{uuid.uuid4().hex[:12]}",
            )
            audit_service.record_activity(
                session,
                activity_type="payment.refund_requested",
                reservation=reservation,
                payload={
                    "payment_id": str(payment.id),
                    "refund_id": refund.id,
                    "amount": str(from_minor_units(refund.amount, payment.currency)),
                },
                actor=actor,
            )
            await commit_and_publish(session)
            return ActionResult.ok(refund_id=refund.id, status=refund.status)
    except PaymentsError as exc:
        logger.warning("Refund of payment %s failed: %s", payment_id, exc.code)
        return ActionResult.from_error(exc)


async def find_payment_for_charge(
    session: AsyncSession, *, charge_ref: str, intent_ref: str | None
) -> Payment | None:
    clauses = [Payment.provider_charge_ref == charge_ref]
    if intent_ref:
        clauses.extend(
            [Payment.provider_intent_ref == intent_ref, Payment.external_reference == intent_ref]
        )
    stmt = (
        select(Payment)
        .where(Payment.method == PaymentMethod.GATEWAY, or_(*clauses))
        .order_by(Payment.created_at)
    )
    return (await session.execute(stmt)).scalars().first()


def mark_refunded(
    session: AsyncSession,
    reservation: Reservation,
    payment: Payment,
    *,
    charge_ref: str,
    amount_refunded: int,
    fully_refunded: bool,
) -> bool:
    """Apply ``charge.refunded``; only a full refund changes the ledger status."""

    payment.provider_charge_ref = payment.provider_charge_ref or charge_ref
    refunded = from_minor_units(amount_refunded, payment.currency)
    if fully_refunded and payment.status != PaymentStatus.REFUNDED:
        payment.status = PaymentStatus.REFUNDED
        audit_service.record_activity(
            session,
            activity_type="payment.refunded",
            reservation=reservation,
            payload={"payment_id": str(payment.id), "amount": str(refunded)},
            actor="webhook",
        )
        return True
    if not fully_refunded:
        audit_service.record_activity(
            session,
            activity_type="payment.partially_refunded",
            reservation=reservation,
            payload={"payment_id": str(payment.id), "amount": str(refunded)},
            actor="webhook",
        )
    return False


__all__ = [
    "LedgerSummary",
    "ensure_gateway_payment",
    "find_payment_by_reference",
    "find_payment_for_charge",
    "mark_refunded",
    "record_damage",
    "record_payment",
    "refund_payment",
    "return_deposit",
    "summarize",
]
