"""Security-deposit authorization holds.

``deposit_status`` on a reservation is a projection of its deposit event log;
:func:`apply_signal` is the only code path that writes it. Operations invoked
by staff return :class:`ActionResult`; the ``on_*`` handlers are called by the
webhook reconciler with the reservation already locked and leave committing to
their caller.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.core.errors import (
    ActionResult,
    AmountExceedsAuthorization,
    InvalidState,
    PaymentsError,
    ProviderRejected,
    ProviderUnavailable,
    ValidationError,
)
from rental_payments.core.money import (
    from_minor_units,
    normalize_currency,
    quantize_amount,
    to_minor_units,
)
from rental_payments.core.settings import get_payment_settings
from rental_payments.integrations import GatewayProvider, PaymentGateway, PaymentIntent
from rental_payments.models import (
    TERMINAL_RESERVATION_STATUSES,
    DepositEvent,
    DepositEventKind,
    DepositStatus,
    PaymentType,
    Reservation,
)
from rental_payments.models.mixins import coerce_utc, utcnow
from rental_payments.services import audit_service, domain_events, ledger_service, store_service
from rental_payments.services.deposit_reducer import (
    DepositProjection,
    DepositSignal,
    ReducerOutcome,
    reduce,
)
from rental_payments.services.locks import reservation_guard

logger = logging.getLogger(__name__)

DEPOSIT_HOLD_TYPE = "deposit_hold"
DEPOSIT_REQUEST_TYPE = "deposit_authorization_request"

_DOMAIN_EVENTS: dict[DepositStatus, str] = {
    DepositStatus.PENDING: "deposit.authorization_requested",
    DepositStatus.AUTHORIZED: "deposit.authorized",
    DepositStatus.CAPTURED: "deposit.captured",
    DepositStatus.RELEASED: "deposit.released",
}


class AuthorizationMode(str, enum.Enum):
    INTERACTIVE = "interactive"
    OFF_SESSION = "off_session"


async def load_projection(
    session: AsyncSession, reservation: Reservation
) -> DepositProjection:
    stmt = select(DepositEvent.event_id).where(
        DepositEvent.reservation_id == reservation.id,
        DepositEvent.applied.is_(True),
    )
    applied = (await session.execute(stmt)).scalars().all()
    expires_at = reservation.deposit_authorization_expires_at
    return DepositProjection(
        status=reservation.deposit_status,
        deposit_required=Decimal(reservation.deposit_amount) > 0,
        authorization_expires_at=coerce_utc(expires_at) if expires_at else None,
        applied_event_ids=frozenset(applied),
    )


async def apply_signal(
    session: AsyncSession,
    reservation: Reservation,
    *,
    event_id: str,
    kind: DepositEventKind,
    occurred_at: datetime | None = None,
    actor: str | None = None,
    context: dict[str, Any] | None = None,
) -> ReducerOutcome:
    """Run one signal through the reducer and persist the result."""

    projection = await load_projection(session, reservation)
    signal = DepositSignal(event_id=event_id, kind=kind, occurred_at=occurred_at or utcnow())
    outcome = reduce(projection, signal)

    session.add(
        DepositEvent(
            reservation_id=reservation.id,
            event_id=event_id,
            kind=kind,
            from_status=outcome.from_status,
            to_status=outcome.to_status,
            applied=outcome.applied,
            reason=outcome.reason,
            occurred_at=signal.occurred_at,
        )
    )
    payload = {"event_id": event_id, "kind": kind.value, **(context or {})}
    if outcome.applied:
        reservation.deposit_status = outcome.to_status
        reservation.deposit_authorization_expires_at = (
            outcome.projection.authorization_expires_at
        )
        audit_service.record_activity(
            session,
            activity_type=f"deposit.{outcome.to_status.value}",
            reservation=reservation,
            payload={**payload, "from": outcome.from_status.value},
            actor=actor,
        )
        event_name = _DOMAIN_EVENTS.get(outcome.to_status)
        if event_name:
            domain_events.enqueue(session, event_name, reservation, **(context or {}))
    else:
        logger.info(
            "Deposit signal %s (%s) ignored for reservation %s: %s",
            event_id,
            kind.value,
            reservation.id,
            outcome.reason,
        )
        audit_service.record_activity(
            session,
            activity_type="deposit.event_ignored",
            reservation=reservation,
            payload={**payload, "reason": outcome.reason},
            actor=actor,
        )
    return outcome


def _held_amount(reservation: Reservation, currency: str) -> Decimal:
    held = reservation.deposit_authorized_amount
    if held is None:
        held = reservation.deposit_amount
    return quantize_amount(held, currency)


async def _cancel_quietly(gateway: PaymentGateway, intent_id: str) -> None:
    try:
        await gateway.cancel_payment_intent(intent_id)
    except PaymentsError as exc:
        logger.warning("Could not cancel payment intent %s: %s", intent_id, exc.code)


# Staff operations -----------------------------------------------------------


async def request_authorization(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    gateways: GatewayProvider,
    mode: AuthorizationMode = AuthorizationMode.INTERACTIVE,
    amount: Decimal | None = None,
    currency: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Place a manual-capture hold for the reservation's deposit.

    Interactive mode returns a client secret for the customer to confirm.
    Off-session mode charges the saved card immediately; a decline leaves the
    deposit state untouched and is never retried automatically.
    """

    try:
        async with reservation_guard(session, reservation_id) as reservation:
            result = await _request_authorization(
                session,
                reservation,
                gateways=gateways,
                mode=mode,
                amount=amount,
                currency=currency,
                actor=actor,
            )
            await domain_events.commit_and_publish(session)
            return result
    except ProviderRejected as exc:
        if mode is AuthorizationMode.OFF_SESSION:
            await _record_decline(session, reservation_id, exc, actor)
        return ActionResult.from_error(exc)
    except PaymentsError as exc:
        if isinstance(exc, ProviderUnavailable):
            logger.error(
                "Deposit authorization for reservation %s hit provider outage: %s",
                reservation_id,
                exc,
            )
        return ActionResult.from_error(exc)


async def _request_authorization(
    session: AsyncSession,
    reservation: Reservation,
    *,
    gateways: GatewayProvider,
    mode: AuthorizationMode,
    amount: Decimal | None,
    currency: str | None,
    actor: str | None,
) -> ActionResult:
    if reservation.status in TERMINAL_RESERVATION_STATUSES:
        raise InvalidState("Reservation is closed", code="reservation_closed")
    if Decimal(reservation.deposit_amount) <= 0:
        raise ValidationError("Reservation has no deposit", code="no_deposit_required")
    status = reservation.deposit_status
    if status in (DepositStatus.AUTHORIZED, DepositStatus.CAPTURED):
        raise InvalidState("Deposit is already authorized", code="deposit_already_authorized")
    if status in (DepositStatus.RELEASED, DepositStatus.FAILED):
        raise InvalidState(f"Deposit hold is closed ({status.value})", code="deposit_closed")

    currency_code = store_service.reservation_currency(reservation)
    if currency is not None and normalize_currency(currency) != currency_code:
        raise ValidationError(
            f"Deposit must be held in {currency_code}", code="currency_mismatch"
        )
    hold = quantize_amount(
        amount if amount is not None else reservation.deposit_amount, currency_code
    )
    if hold <= 0:
        raise ValidationError("Amount must be positive", code="invalid_amount")

    gateway = store_service.gateway_for_store(gateways, reservation.store)
    metadata = {
        "reservation_id": str(reservation.id),
        "reservation_number": reservation.number,
    }
    seed = f"deposit_{reservation.id}_{uuid.uuid4().hex[:12]}"
    # At most one open deposit intent per reservation; a replaced one is cancelled.
    previous_intent = reservation.deposit_intent_ref

    if mode is AuthorizationMode.INTERACTIVE:
        intent = await gateway.create_payment_intent(
            amount=to_minor_units(hold, currency_code),
            currency=currency_code,
            manual_capture=True,
            customer=reservation.provider_customer_ref,
            metadata={**metadata, "type": DEPOSIT_REQUEST_TYPE},
            idempotency_seed=seed,
        )
        if previous_intent and previous_intent != intent.id:
            await _cancel_quietly(gateway, previous_intent)
        reservation.deposit_intent_ref = intent.id
        if status is DepositStatus.NONE:
            await apply_signal(
                session,
                reservation,
                event_id=f"{intent.id}:requested",
                kind=DepositEventKind.REQUESTED,
                actor=actor,
                context={"amount": str(hold), "mode": mode.value},
            )
        else:
            audit_service.record_activity(
                session,
                activity_type="deposit.authorization_rerequested",
                reservation=reservation,
                payload={
                    "intent_id": intent.id,
                    "replaced_intent_id": previous_intent,
                    "amount": str(hold),
                },
                actor=actor,
            )
        return ActionResult.ok(
            mode=mode.value,
            intent_id=intent.id,
            client_secret=intent.client_secret,
            publishable_key=get_payment_settings().stripe_publishable_key,
            account_id=reservation.store.stripe_account_id,
            amount=str(hold),
            currency=currency_code,
            deposit_status=reservation.deposit_status.value,
        )

    if not reservation.saved_payment_method_ref or not reservation.provider_customer_ref:
        raise ValidationError(
            "No saved payment method for off-session authorization",
            code="no_saved_payment_method",
        )
    intent = await gateway.create_payment_intent(
        amount=to_minor_units(hold, currency_code),
        currency=currency_code,
        manual_capture=True,
        customer=reservation.provider_customer_ref,
        payment_method=reservation.saved_payment_method_ref,
        confirm=True,
        off_session=True,
        metadata={**metadata, "type": DEPOSIT_HOLD_TYPE},
        idempotency_seed=seed,
    )
    if intent.status != "requires_capture":
        # Anything else (e.g. requires_action for 3DS) cannot complete off-session.
        await _cancel_quietly(gateway, intent.id)
        raise ProviderRejected(
            f"Deposit authorization was not completed ({intent.status})",
            decline_code=intent.last_error_code or intent.status,
        )

    confirmed_at = utcnow()
    await _mark_authorized(
        session,
        reservation,
        intent=intent,
        currency=currency_code,
        occurred_at=confirmed_at,
        actor=actor,
    )
    if previous_intent and previous_intent != intent.id:
        # The interactive request the customer never confirmed.
        await _cancel_quietly(gateway, previous_intent)
    return ActionResult.ok(
        mode=mode.value,
        intent_id=intent.id,
        amount=str(reservation.deposit_authorized_amount),
        currency=currency_code,
        deposit_status=reservation.deposit_status.value,
        expires_at=(
            reservation.deposit_authorization_expires_at.isoformat()
            if reservation.deposit_authorization_expires_at
            else None
        ),
    )


async def _mark_authorized(
    session: AsyncSession,
    reservation: Reservation,
    *,
    intent: PaymentIntent,
    currency: str,
    occurred_at: datetime,
    actor: str | None,
) -> ReducerOutcome:
    if reservation.deposit_status is DepositStatus.NONE:
        await apply_signal(
            session,
            reservation,
            event_id=f"{intent.id}:requested",
            kind=DepositEventKind.REQUESTED,
            occurred_at=occurred_at,
            actor=actor,
        )
    held = from_minor_units(intent.amount_capturable or intent.amount, currency)
    outcome = await apply_signal(
        session,
        reservation,
        event_id=f"{intent.id}:authorized",
        kind=DepositEventKind.AUTHORIZED,
        occurred_at=occurred_at,
        actor=actor,
        context={"intent_id": intent.id, "amount": str(held)},
    )
    if outcome.applied:
        reservation.deposit_intent_ref = intent.id
        reservation.deposit_authorized_amount = held
        if intent.payment_method and not reservation.saved_payment_method_ref:
            reservation.saved_payment_method_ref = intent.payment_method
        if intent.customer and not reservation.provider_customer_ref:
            reservation.provider_customer_ref = intent.customer
    return outcome


async def _record_decline(
    session: AsyncSession,
    reservation_id: uuid.UUID,
    exc: ProviderRejected,
    actor: str | None,
) -> None:
    async with reservation_guard(session, reservation_id) as reservation:
        audit_service.record_activity(
            session,
            activity_type="deposit.authorization_declined",
            reservation=reservation,
            payload={"decline_code": exc.decline_code, "message": str(exc)},
            actor=actor,
        )
        await session.commit()


async def capture(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    gateways: GatewayProvider,
    amount: Decimal | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Capture all or part of an authorized hold.

    The uncaptured remainder is released by the provider and is not recorded
    as a separate payment.
    """

    try:
        async with reservation_guard(session, reservation_id) as reservation:
            result = await _capture_locked(
                session, reservation, gateways=gateways, amount=amount, actor=actor
            )
            await domain_events.commit_and_publish(session)
            return result
    except PaymentsError as exc:
        if isinstance(exc, ProviderUnavailable):
            logger.error("Deposit capture for reservation %s unresolved: %s", reservation_id, exc)
        return ActionResult.from_error(exc)


async def _capture_locked(
    session: AsyncSession,
    reservation: Reservation,
    *,
    gateways: GatewayProvider,
    amount: Decimal | None,
    actor: str | None,
) -> ActionResult:
    if reservation.deposit_status is not DepositStatus.AUTHORIZED:
        raise InvalidState(
            f"Cannot capture a deposit in state {reservation.deposit_status.value}"
        )
    intent_id = reservation.deposit_intent_ref
    if not intent_id:
        raise InvalidState("Authorized deposit has no payment intent")

    currency = store_service.reservation_currency(reservation)
    held = _held_amount(reservation, currency)
    requested = held if amount is None else quantize_amount(amount, currency)
    if requested <= 0:
        raise ValidationError("Amount must be positive", code="invalid_amount")
    if requested > held:
        raise AmountExceedsAuthorization(f"Cannot capture {requested}; only {held} is held")

    gateway = store_service.gateway_for_store(gateways, reservation.store)
    try:
        intent = await gateway.capture_payment_intent(
            intent_id, amount=to_minor_units(requested, currency)
        )
    except ProviderUnavailable:
        # The capture may or may not have happened; ask before deciding.
        logger.warning("Capture of %s has unknown outcome; re-querying", intent_id)
        intent = await gateway.retrieve_payment_intent(intent_id)
        if intent.status == "requires_capture":
            raise ProviderUnavailable("Capture did not complete; the hold is still open")
    except ProviderRejected:
        intent = await gateway.retrieve_payment_intent(intent_id)
        if intent.status not in ("canceled", "succeeded"):
            raise

    if intent.status == "canceled":
        await apply_signal(
            session,
            reservation,
            event_id=f"{intent_id}:released",
            kind=DepositEventKind.RELEASED,
            actor=actor,
            context={"source": "capture_attempt"},
        )
        return ActionResult.fail(
            "authorization_no_longer_held",
            "The provider already released this hold",
            deposit_status=reservation.deposit_status.value,
        )
    if intent.status != "succeeded":
        raise ProviderRejected(
            f"Capture was not completed ({intent.status})", decline_code=intent.status
        )

    captured = (
        from_minor_units(intent.amount_received, currency)
        if intent.amount_received
        else requested
    )
    payment, _ = await ledger_service.ensure_gateway_payment(
        session,
        reservation,
        external_reference=intent_id,
        payment_type=PaymentType.DEPOSIT,
        amount=captured,
        currency=currency,
        intent_ref=intent_id,
        charge_ref=intent.latest_charge,
    )
    await apply_signal(
        session,
        reservation,
        event_id=f"{intent_id}:captured",
        kind=DepositEventKind.CAPTURED,
        actor=actor,
        context={"amount": str(captured), "held": str(held)},
    )
    return ActionResult.ok(
        amount=str(captured),
        payment_id=str(payment.id),
        deposit_status=reservation.deposit_status.value,
    )


async def release(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    gateways: GatewayProvider,
    reason: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Cancel the hold without moving funds; ``released`` is terminal."""

    try:
        async with reservation_guard(session, reservation_id) as reservation:
            await release_locked(
                session, reservation, gateways=gateways, reason=reason, actor=actor
            )
            await domain_events.commit_and_publish(session)
            return ActionResult.ok(deposit_status=reservation.deposit_status.value)
    except PaymentsError as exc:
        return ActionResult.from_error(exc)


async def release_locked(
    session: AsyncSession,
    reservation: Reservation,
    *,
    gateways: GatewayProvider,
    reason: str | None = None,
    actor: str | None = None,
) -> ReducerOutcome:
    status = reservation.deposit_status
    if status not in (DepositStatus.AUTHORIZED, DepositStatus.CARD_SAVED):
        raise InvalidState(f"Cannot release a deposit in state {status.value}")

    intent_id = reservation.deposit_intent_ref
    if status is DepositStatus.AUTHORIZED and intent_id:
        gateway = store_service.gateway_for_store(gateways, reservation.store)
        try:
            await gateway.cancel_payment_intent(intent_id)
        except ProviderRejected:
            intent = await gateway.retrieve_payment_intent(intent_id)
            if intent.status != "canceled":
                raise
        event_id = f"{intent_id}:released"
    else:
        event_id = f"{reservation.id}:released"

    return await apply_signal(
        session,
        reservation,
        event_id=event_id,
        kind=DepositEventKind.RELEASED,
        actor=actor,
        context={"reason": reason} if reason else None,
    )


# Expiry sweep ----------------------------------------------------------------


@dataclass(slots=True)
class ExpirySweepReport:
    checked: int = 0
    released: int = 0
    failed: int = 0
    captured: int = 0
    still_held: int = 0
    retry_later: int = 0


async def reconcile_expiry(
    session: AsyncSession,
    *,
    gateways: GatewayProvider,
    now: datetime | None = None,
) -> ExpirySweepReport:
    """Re-query every authorized hold past its expiry and record the outcome.

    Providers drop expired holds without always sending a webhook. Only the
    deposit projection changes; the reservation lifecycle status is untouched.
    """

    now = now or utcnow()
    stmt = select(Reservation.id).where(
        Reservation.deposit_status == DepositStatus.AUTHORIZED,
        Reservation.deposit_authorization_expires_at.is_not(None),
        Reservation.deposit_authorization_expires_at < now,
    )
    reservation_ids = list((await session.execute(stmt)).scalars().all())
    await session.rollback()

    report = ExpirySweepReport()
    for reservation_id in reservation_ids:
        try:
            async with reservation_guard(session, reservation_id) as reservation:
                outcome = await _reconcile_one(session, reservation, gateways=gateways, now=now)
                await domain_events.commit_and_publish(session)
        except ProviderUnavailable as exc:
            report.retry_later += 1
            logger.warning("Expiry check for %s deferred: %s", reservation_id, exc)
            continue
        except PaymentsError as exc:
            report.retry_later += 1
            logger.warning("Expiry check for %s failed: %s", reservation_id, exc.code)
            continue
        if outcome is None:
            continue
        report.checked += 1
        setattr(report, outcome, getattr(report, outcome) + 1)

    if reservation_ids:
        logger.info("Deposit expiry sweep finished: %s", report)
    return report


async def _reconcile_one(
    session: AsyncSession,
    reservation: Reservation,
    *,
    gateways: GatewayProvider,
    now: datetime,
) -> str | None:
    expires_at = reservation.deposit_authorization_expires_at
    if (
        reservation.deposit_status is not DepositStatus.AUTHORIZED
        or expires_at is None
        or coerce_utc(expires_at) >= now
    ):
        return None

    intent_id = reservation.deposit_intent_ref
    if not intent_id:
        await apply_signal(
            session,
            reservation,
            event_id=f"{reservation.id}:failed",
            kind=DepositEventKind.FAILED,
            actor="expiry_sweep",
            context={"error": "missing_intent"},
        )
        return "failed"

    gateway = store_service.gateway_for_store(gateways, reservation.store)
    try:
        intent = await gateway.retrieve_payment_intent(intent_id)
    except ProviderRejected as exc:
        await apply_signal(
            session,
            reservation,
            event_id=f"{intent_id}:failed",
            kind=DepositEventKind.FAILED,
            actor="expiry_sweep",
            context={"error": exc.decline_code or exc.code},
        )
        return "failed"

    if intent.status == "canceled":
        await apply_signal(
            session,
            reservation,
            event_id=f"{intent_id}:released",
            kind=DepositEventKind.RELEASED,
            actor="expiry_sweep",
            context={"source": "expiry"},
        )
        return "released"
    if intent.status == "requires_capture":
        logger.info("Hold %s is past its expiry but still capturable", intent_id)
        return "still_held"
    if intent.status == "succeeded":
        await on_intent_succeeded(
            session,
            reservation,
            intent_id=intent_id,
            amount_received=intent.amount_received,
            charge_ref=intent.latest_charge,
            actor="expiry_sweep",
        )
        return "captured"

    await apply_signal(
        session,
        reservation,
        event_id=f"{intent_id}:failed",
        kind=DepositEventKind.FAILED,
        actor="expiry_sweep",
        context={"error": intent.last_error_code or intent.status},
    )
    return "failed"


# Webhook handlers (reservation already locked; caller commits) ---------------


async def on_authorization_confirmed(
    session: AsyncSession,
    reservation: Reservation,
    *,
    gateways: GatewayProvider,
    intent_id: str,
    amount_capturable: int,
    payment_method: str | None = None,
    customer: str | None = None,
    occurred_at: datetime | None = None,
) -> ReducerOutcome | None:
    """Apply a customer-confirmed hold.

    A hold on an intent that was replaced by a newer request is cancelled at
    the provider instead of being tracked. A provider outage propagates so the
    webhook is redelivered and the cancel retried.
    """

    if reservation.deposit_intent_ref and reservation.deposit_intent_ref != intent_id:
        gateway = store_service.gateway_for_store(gateways, reservation.store)
        try:
            await gateway.cancel_payment_intent(intent_id)
        except ProviderRejected as exc:
            logger.info("Stale deposit intent %s not cancelled: %s", intent_id, exc)
        audit_service.record_activity(
            session,
            activity_type="deposit.event_ignored",
            reservation=reservation,
            payload={
                "intent_id": intent_id,
                "reason": "stale_intent",
                "current_intent_id": reservation.deposit_intent_ref,
            },
            actor="webhook",
        )
        return None

    currency = store_service.reservation_currency(reservation)
    intent = PaymentIntent(
        id=intent_id,
        status="requires_capture",
        amount=amount_capturable,
        currency=currency,
        amount_capturable=amount_capturable,
        payment_method=payment_method,
        customer=customer,
    )
    return await _mark_authorized(
        session,
        reservation,
        intent=intent,
        currency=currency,
        occurred_at=occurred_at or utcnow(),
        actor="webhook",
    )


async def on_intent_canceled(
    session: AsyncSession,
    reservation: Reservation,
    *,
    intent_id: str,
    cancellation_reason: str | None = None,
    occurred_at: datetime | None = None,
) -> ReducerOutcome | None:
    if reservation.deposit_intent_ref and reservation.deposit_intent_ref != intent_id:
        audit_service.record_activity(
            session,
            activity_type="deposit.event_ignored",
            reservation=reservation,
            payload={"intent_id": intent_id, "reason": "stale_intent"},
            actor="webhook",
        )
        return None
    return await apply_signal(
        session,
        reservation,
        event_id=f"{intent_id}:released",
        kind=DepositEventKind.RELEASED,
        occurred_at=occurred_at,
        actor="webhook",
        context={"cancellation_reason": cancellation_reason} if cancellation_reason else None,
    )


async def on_intent_succeeded(
    session: AsyncSession,
    reservation: Reservation,
    *,
    intent_id: str,
    amount_received: int,
    charge_ref: str | None = None,
    occurred_at: datetime | None = None,
    actor: str = "webhook",
) -> ReducerOutcome:
    """Record a capture, including one made outside this system.

    A capture that overtakes its authorization webhook implies the hold, so
    the authorization is applied first. The deposit payment row is written
    only when the capture itself is applied.
    """

    currency = store_service.reservation_currency(reservation)
    captured = from_minor_units(amount_received, currency)
    occurred_at = occurred_at or utcnow()
    if reservation.deposit_status in (
        DepositStatus.NONE,
        DepositStatus.PENDING,
        DepositStatus.CARD_SAVED,
    ):
        await _mark_authorized(
            session,
            reservation,
            intent=PaymentIntent(
                id=intent_id,
                status="requires_capture",
                amount=amount_received,
                currency=currency,
                amount_capturable=amount_received,
            ),
            currency=currency,
            occurred_at=occurred_at,
            actor=actor,
        )
    outcome = await apply_signal(
        session,
        reservation,
        event_id=f"{intent_id}:captured",
        kind=DepositEventKind.CAPTURED,
        occurred_at=occurred_at,
        actor=actor,
        context={"amount": str(captured)},
    )
    if outcome.applied:
        await ledger_service.ensure_gateway_payment(
            session,
            reservation,
            external_reference=intent_id,
            payment_type=PaymentType.DEPOSIT,
            amount=captured,
            currency=currency,
            intent_ref=intent_id,
            charge_ref=charge_ref,
            paid_at=occurred_at,
        )
    return outcome


def on_intent_failed(
    session: AsyncSession,
    reservation: Reservation,
    *,
    intent_id: str,
    error_code: str | None,
    error_message: str | None,
) -> None:
    """Declines on an interactive hold are audit-only; the state stays put."""
    audit_service.record_activity(
        session,
        activity_type="deposit.authorization_failed",
        reservation=reservation,
        payload={"intent_id": intent_id, "error_code": error_code, "message": error_message},
        actor="webhook",
    )


__all__ = [
    "AuthorizationMode",
    "DEPOSIT_HOLD_TYPE",
    "DEPOSIT_REQUEST_TYPE",
    "ExpirySweepReport",
    "apply_signal",
    "capture",
    "load_projection",
    "on_authorization_confirmed",
    "on_intent_canceled",
    "on_intent_failed",
    "on_intent_succeeded",
    "reconcile_expiry",
    "release",
    "release_locked",
    "request_authorization",
]
