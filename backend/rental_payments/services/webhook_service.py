"""Provider webhook reconciliation.

Every delivery lands in the ``provider_events`` inbox. Effects are applied
under the owning reservation's lock, and each manager deduplicates on its
own event ids, so redelivered or concurrent copies have no further effect.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, assert_never

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.core.errors import NotFound, ProviderUnavailable
from rental_payments.integrations import GatewayProvider, verify_webhook_signature
from rental_payments.integrations.provider_events import (
    AccountUpdated,
    ChargeRefunded,
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    MalformedEvent,
    PaymentIntentAuthorized,
    PaymentIntentCanceled,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    ProviderEventPayload,
    UnknownEvent,
    is_deposit_intent,
    parse_event,
)
from rental_payments.models import ProviderEvent, ProviderEventStatus, Reservation
from rental_payments.models.mixins import utcnow
from rental_payments.services import (
    audit_service,
    checkout_service,
    deposit_service,
    domain_events,
    ledger_service,
    store_service,
)
from rental_payments.services.locks import reservation_guard

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("rental_payments.security")

PROCESSED = "processed"
IGNORED = "ignored"
DROPPED = "dropped"
DUPLICATE = "duplicate"

_FINAL_STATUSES = {
    PROCESSED: ProviderEventStatus.PROCESSED,
    IGNORED: ProviderEventStatus.IGNORED,
    DROPPED: ProviderEventStatus.DROPPED,
}


@dataclass(slots=True)
class WebhookOutcome:
    status: str
    event_id: str | None = None
    event_type: str | None = None
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.event_type:
            body["event_type"] = self.event_type
        if self.detail:
            body["detail"] = self.detail
        return body


class _Drop(Exception):
    """Event cannot be applied and must not be redelivered."""

    def __init__(self, reason: str, *, reservation_id: uuid.UUID | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.reservation_id = reservation_id


async def handle_webhook(
    session: AsyncSession,
    *,
    payload: bytes,
    signature: str | None,
    secret: str | None,
    gateways: GatewayProvider,
) -> WebhookOutcome:
    """Verify the signature (fail closed) and reconcile the event.

    :class:`SignatureInvalid` and :class:`ProviderUnavailable` propagate so the
    HTTP layer can answer 400 and 503 respectively.
    """

    event = verify_webhook_signature(payload, signature, secret)
    return await process_event(session, event, gateways=gateways)


async def _existing_inbox_row(session: AsyncSession, event_id: str) -> ProviderEvent | None:
    stmt = select(ProviderEvent).where(ProviderEvent.provider_event_id == event_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def _store_inbox_row(
    session: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    account_ref: str | None,
    raw: dict[str, Any],
    status: str,
) -> None:
    row = await _existing_inbox_row(session, event_id)
    if row is None:
        row = ProviderEvent(
            provider_event_id=event_id,
            event_type=event_type,
            account_ref=account_ref,
            raw=raw,
        )
        session.add(row)
    row.status = _FINAL_STATUSES[status]
    row.processed_at = utcnow()


async def process_event(
    session: AsyncSession,
    raw: dict[str, Any],
    *,
    gateways: GatewayProvider,
) -> WebhookOutcome:
    """Reconcile one already-verified event payload."""

    try:
        event = parse_event(raw)
    except MalformedEvent as exc:
        logger.warning("Dropping malformed webhook payload: %s", exc)
        return WebhookOutcome(DROPPED, detail=str(exc))

    envelope = event.envelope
    existing = await _existing_inbox_row(session, envelope.event_id)
    if existing is not None and existing.status != ProviderEventStatus.RECEIVED:
        await session.rollback()
        logger.info("Webhook %s already handled", envelope.event_id)
        return WebhookOutcome(DUPLICATE, envelope.event_id, envelope.event_type)
    await session.rollback()

    try:
        status = await _dispatch(session, event, raw=raw, gateways=gateways)
        detail = None
    except _Drop as drop:
        await session.rollback()
        status, detail = DROPPED, drop.reason
        logger.warning(
            "Dropping webhook %s (%s): %s", envelope.event_id, envelope.event_type, drop.reason
        )
        if drop.reservation_id is not None:
            audit_service.record_activity(
                session,
                activity_type="webhook.dropped",
                reservation_id=drop.reservation_id,
                payload={"event_id": envelope.event_id, "reason": drop.reason},
                actor="webhook",
            )
        await _store_inbox_row(
            session,
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            account_ref=envelope.account_ref,
            raw=raw,
            status=status,
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return WebhookOutcome(DUPLICATE, envelope.event_id, envelope.event_type)
        return WebhookOutcome(status, envelope.event_id, envelope.event_type, detail)
    except ProviderUnavailable:
        await session.rollback()
        logger.error(
            "Webhook %s (%s) deferred: provider unavailable",
            envelope.event_id,
            envelope.event_type,
        )
        raise

    if status == IGNORED:
        logger.info("Ignoring webhook %s of type %s", envelope.event_id, envelope.event_type)
        await _store_inbox_row(
            session,
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            account_ref=envelope.account_ref,
            raw=raw,
            status=status,
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return WebhookOutcome(DUPLICATE, envelope.event_id, envelope.event_type)
    return WebhookOutcome(status, envelope.event_id, envelope.event_type, detail)


def _reservation_id(metadata: dict[str, str]) -> uuid.UUID:
    raw = metadata.get("reservation_id")
    if not raw:
        raise _Drop("missing_reservation_id")
    try:
        return uuid.UUID(raw)
    except ValueError as exc:
        raise _Drop("invalid_reservation_id") from exc


def _check_account(reservation: Reservation, event: ProviderEventPayload) -> None:
    """The event's connected account must own the reservation's store."""
    expected = reservation.store.stripe_account_id if reservation.store else None
    received = event.envelope.account_ref
    if expected and received == expected:
        return
    security_logger.warning(
        "Webhook %s account mismatch for reservation %s: got %s",
        event.envelope.event_id,
        reservation.id,
        received,
    )
    raise _Drop("account_mismatch", reservation_id=reservation.id)


async def _apply_locked(
    session: AsyncSession,
    reservation_id: uuid.UUID,
    event: ProviderEventPayload,
    *,
    raw: dict[str, Any],
    gateways: GatewayProvider,
) -> str:
    envelope = event.envelope
    try:
        async with reservation_guard(session, reservation_id) as reservation:
            # A concurrent delivery may have finished while this one waited.
            existing = await _existing_inbox_row(session, envelope.event_id)
            if existing is not None and existing.status != ProviderEventStatus.RECEIVED:
                return DUPLICATE
            _check_account(reservation, event)
            status = await _apply_to_reservation(
                session, reservation, event, gateways=gateways
            )
            await _store_inbox_row(
                session,
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                account_ref=envelope.account_ref,
                raw=raw,
                status=status,
            )
            try:
                await domain_events.commit_and_publish(session)
            except IntegrityError:
                # A concurrent delivery of the same event won the inbox insert.
                return DUPLICATE
            return status
    except NotFound as exc:
        raise _Drop("reservation_not_found") from exc


async def _dispatch(
    session: AsyncSession,
    event: ProviderEventPayload,
    *,
    raw: dict[str, Any],
    gateways: GatewayProvider,
) -> str:
    match event:
        case CheckoutSessionCompleted() | CheckoutSessionExpired():
            return await _apply_locked(
                session, _reservation_id(event.metadata), event, raw=raw, gateways=gateways
            )
        case (
            PaymentIntentAuthorized()
            | PaymentIntentCanceled()
            | PaymentIntentSucceeded()
            | PaymentIntentFailed()
        ):
            if not is_deposit_intent(event.metadata):
                return IGNORED
            return await _apply_locked(
                session, _reservation_id(event.metadata), event, raw=raw, gateways=gateways
            )
        case ChargeRefunded():
            payment = await ledger_service.find_payment_for_charge(
                session, charge_ref=event.charge_id, intent_ref=event.payment_intent
            )
            if payment is None:
                return IGNORED
            reservation_id = payment.reservation_id
            await session.rollback()
            return await _apply_locked(
                session, reservation_id, event, raw=raw, gateways=gateways
            )
        case AccountUpdated():
            store = await store_service.apply_account_update(
                session,
                account_id=event.account_id,
                charges_enabled=event.charges_enabled,
                payouts_enabled=event.payouts_enabled,
                details_submitted=event.details_submitted,
            )
            if store is None:
                await session.rollback()
                return IGNORED
            await _store_inbox_row(
                session,
                event_id=event.envelope.event_id,
                event_type=event.envelope.event_type,
                account_ref=event.envelope.account_ref,
                raw=raw,
                status=PROCESSED,
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return DUPLICATE
            return PROCESSED
        case UnknownEvent():
            return IGNORED
        case _:
            assert_never(event)


async def _apply_to_reservation(
    session: AsyncSession,
    reservation: Reservation,
    event: ProviderEventPayload,
    *,
    gateways: GatewayProvider,
) -> str:
    occurred_at = event.envelope.occurred_at
    match event:
        case CheckoutSessionCompleted():
            await checkout_service.complete_checkout(
                session,
                reservation,
                gateways=gateways,
                session_id=event.session_id,
                payment_status=event.payment_status,
                payment_intent=event.payment_intent,
                customer=event.customer,
                amount_total=event.amount_total,
                metadata=event.metadata,
                occurred_at=occurred_at,
            )
            return PROCESSED
        case CheckoutSessionExpired():
            return checkout_service.expire_checkout(
                session, reservation, session_id=event.session_id, metadata=event.metadata
            )
        case PaymentIntentAuthorized():
            await deposit_service.on_authorization_confirmed(
                session,
                reservation,
                gateways=gateways,
                intent_id=event.intent_id,
                amount_capturable=event.amount_capturable,
                payment_method=event.payment_method,
                customer=event.customer,
                occurred_at=occurred_at,
            )
            return PROCESSED
        case PaymentIntentCanceled():
            await deposit_service.on_intent_canceled(
                session,
                reservation,
                intent_id=event.intent_id,
                cancellation_reason=event.cancellation_reason,
                occurred_at=occurred_at,
            )
            return PROCESSED
        case PaymentIntentSucceeded():
            await deposit_service.on_intent_succeeded(
                session,
                reservation,
                intent_id=event.intent_id,
                amount_received=event.amount_received,
                charge_ref=event.latest_charge,
                occurred_at=occurred_at,
            )
            return PROCESSED
        case PaymentIntentFailed():
            deposit_service.on_intent_failed(
                session,
                reservation,
                intent_id=event.intent_id,
                error_code=event.error_code,
                error_message=event.error_message,
            )
            return PROCESSED
        case ChargeRefunded():
            payment = next(
                (
                    p
                    for p in reservation.payments
                    if p.provider_charge_ref == event.charge_id
                    or (
                        event.payment_intent
                        and event.payment_intent
                        in (p.provider_intent_ref, p.external_reference)
                    )
                ),
                None,
            )
            if payment is None:
                return IGNORED
            ledger_service.mark_refunded(
                session,
                reservation,
                payment,
                charge_ref=event.charge_id,
                amount_refunded=event.amount_refunded,
                fully_refunded=event.fully_refunded,
            )
            return PROCESSED
        case AccountUpdated() | UnknownEvent():
            return IGNORED
        case _:
            assert_never(event)


__all__ = ["WebhookOutcome", "handle_webhook", "process_event"]
