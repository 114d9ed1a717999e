"""Reservation lifecycle with soft payment and deposit warnings."""
from __future__ import annotations

import enum
import logging
import uuid
from decimal import Decimal
from typing import Any, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.core.errors import (
    ActionResult,
    InvalidState,
    PaymentsError,
    WarningsRequireAcknowledgement,
)
from rental_payments.integrations import GatewayProvider
from rental_payments.models import (
    TERMINAL_RESERVATION_STATUSES,
    DepositStatus,
    Reservation,
    ReservationStatus,
)
from rental_payments.models.mixins import utcnow
from rental_payments.services import (
    audit_service,
    deposit_service,
    domain_events,
    ledger_service,
    store_service,
)
from rental_payments.services.locks import load_reservation, reservation_guard

logger = logging.getLogger(__name__)

_ALLOWED_STATUS_TRANSITIONS: dict[ReservationStatus, set[ReservationStatus]] = {
    ReservationStatus.PENDING: {
        ReservationStatus.CONFIRMED,
        ReservationStatus.REJECTED,
        ReservationStatus.CANCELLED,
    },
    ReservationStatus.CONFIRMED: {ReservationStatus.ONGOING, ReservationStatus.CANCELLED},
    ReservationStatus.ONGOING: {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED},
    ReservationStatus.COMPLETED: set(),
    ReservationStatus.CANCELLED: set(),
    ReservationStatus.REJECTED: set(),
}

# Transitions where staff hand over or take back items.
_WARNING_GATED = {ReservationStatus.ONGOING, ReservationStatus.COMPLETED}

_HELD_DEPOSIT_STATUSES = {DepositStatus.AUTHORIZED, DepositStatus.CAPTURED}


class ReservationWarning(str, enum.Enum):
    PAYMENT_INCOMPLETE = "payment_incomplete"
    DEPOSIT_NOT_COLLECTED = "deposit_not_collected"


class StatusAction(str, enum.Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    PICKUP = "pickup"
    RETURN = "return"


_ACTION_TARGETS: dict[StatusAction, ReservationStatus] = {
    StatusAction.CONFIRM: ReservationStatus.CONFIRMED,
    StatusAction.REJECT: ReservationStatus.REJECTED,
    StatusAction.PICKUP: ReservationStatus.ONGOING,
    StatusAction.RETURN: ReservationStatus.COMPLETED,
}


class CancelDepositEffect(str, enum.Enum):
    NONE = "none"
    CANCEL_OPEN_INTENT = "cancel_open_intent"
    RELEASE = "release"
    RELEASE_OR_ABORT = "release_or_abort"
    DEPOSIT_RETURN_REQUIRED = "deposit_return_required"


# Side effect of cancelling, per deposit state. Applies to every non-terminal
# reservation status (pending, confirmed, ongoing) alike.
CANCEL_DEPOSIT_EFFECTS: dict[DepositStatus, CancelDepositEffect] = {
    DepositStatus.NONE: CancelDepositEffect.NONE,
    DepositStatus.PENDING: CancelDepositEffect.CANCEL_OPEN_INTENT,
    DepositStatus.CARD_SAVED: CancelDepositEffect.RELEASE,
    DepositStatus.AUTHORIZED: CancelDepositEffect.RELEASE_OR_ABORT,
    DepositStatus.CAPTURED: CancelDepositEffect.DEPOSIT_RETURN_REQUIRED,
    DepositStatus.RELEASED: CancelDepositEffect.NONE,
    DepositStatus.FAILED: CancelDepositEffect.NONE,
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in _ALLOWED_STATUS_TRANSITIONS[current]


def cancel_effect(
    status: ReservationStatus, deposit_status: DepositStatus
) -> CancelDepositEffect:
    if status in TERMINAL_RESERVATION_STATUSES:
        raise InvalidState(
            f"Cannot cancel a {status.value} reservation", code="invalid_transition"
        )
    return CANCEL_DEPOSIT_EFFECTS[deposit_status]


def compute_warnings(reservation: Reservation) -> list[str]:
    """Outstanding money issues; they warn but never block a transition."""

    summary = ledger_service.summarize(reservation)
    warnings: list[str] = []
    if summary.rental_paid < summary.rental_amount:
        warnings.append(ReservationWarning.PAYMENT_INCOMPLETE.value)
    deposit = Decimal(reservation.deposit_amount)
    if deposit > 0 and reservation.deposit_status not in _HELD_DEPOSIT_STATUSES:
        if summary.deposit_collected - summary.deposit_returned < deposit:
            warnings.append(ReservationWarning.DEPOSIT_NOT_COLLECTED.value)
    return warnings


def apply_transition(
    session: AsyncSession,
    reservation: Reservation,
    target: ReservationStatus,
    *,
    actor: str | None = None,
    payload: dict[str, Any] | None = None,
) -> ReservationStatus:
    """Move a locked reservation to ``target``; the caller commits."""

    current = reservation.status
    if not can_transition(current, target):
        raise InvalidState(
            f"Cannot move reservation from {current.value} to {target.value}",
            code="invalid_transition",
        )
    now = utcnow()
    reservation.status = target
    if target is ReservationStatus.ONGOING:
        reservation.picked_up_at = now
    elif target is ReservationStatus.COMPLETED:
        reservation.returned_at = now
    elif target is ReservationStatus.CANCELLED:
        reservation.cancelled_at = now

    audit_service.record_activity(
        session,
        activity_type=f"reservation.{target.value}",
        reservation=reservation,
        payload={"from": current.value, "to": target.value, **(payload or {})},
        actor=actor,
    )
    domain_events.enqueue(session, f"reservation.{target.value}", reservation, previous=current.value)
    return current


async def get_warnings(session: AsyncSession, *, reservation_id: uuid.UUID) -> ActionResult:
    try:
        reservation = await load_reservation(session, reservation_id)
    except PaymentsError as exc:
        return ActionResult.from_error(exc)
    summary = ledger_service.summarize(reservation)
    return ActionResult.ok(
        warnings=compute_warnings(reservation),
        status=reservation.status.value,
        deposit_status=reservation.deposit_status.value,
        ledger=summary.as_dict(),
    )


async def change_status(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    action: StatusAction,
    acknowledge_warnings: bool = False,
    reason: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Confirm, reject, pick up or return a reservation.

    Pickup and return with outstanding warnings need ``acknowledge_warnings``;
    the acknowledged warnings are kept in the activity log.
    """

    target = _ACTION_TARGETS[action]
    try:
        async with reservation_guard(session, reservation_id) as reservation:
            payload: dict[str, Any] = {}
            warnings: list[str] = []
            if target in _WARNING_GATED and can_transition(reservation.status, target):
                warnings = compute_warnings(reservation)
                if warnings and not acknowledge_warnings:
                    raise WarningsRequireAcknowledgement(warnings)
                if warnings:
                    payload["acknowledged_warnings"] = warnings
                    audit_service.record_activity(
                        session,
                        activity_type="reservation.warnings_acknowledged",
                        reservation=reservation,
                        payload={"warnings": warnings, "action": action.value},
                        actor=actor,
                    )
            if target is ReservationStatus.REJECTED:
                reservation.rejection_reason = reason
                payload["reason"] = reason

            previous = apply_transition(
                session, reservation, target, actor=actor, payload=payload
            )
            await domain_events.commit_and_publish(session)
            logger.info(
                "Reservation %s moved %s -> %s", reservation_id, previous.value, target.value
            )
            result = ActionResult.ok(previous_status=previous.value, status=target.value)
            result.warnings = warnings
            return result
    except PaymentsError as exc:
        return ActionResult.from_error(exc)


async def cancel(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    gateways: GatewayProvider,
    reason: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Cancel from any non-terminal state, settling the deposit hold first.

    An authorized hold is released before the status changes; if the release
    fails the reservation is not cancelled. A captured deposit is never
    refunded automatically: the result flags ``deposit_return_required``.
    """

    try:
        async with reservation_guard(session, reservation_id) as reservation:
            effect = cancel_effect(reservation.status, reservation.deposit_status)
            match effect:
                case CancelDepositEffect.NONE:
                    pass
                case CancelDepositEffect.CANCEL_OPEN_INTENT:
                    await _cancel_open_intent(reservation, gateways=gateways)
                case CancelDepositEffect.RELEASE | CancelDepositEffect.RELEASE_OR_ABORT:
                    await deposit_service.release_locked(
                        session,
                        reservation,
                        gateways=gateways,
                        reason="reservation_cancelled",
                        actor=actor,
                    )
                case CancelDepositEffect.DEPOSIT_RETURN_REQUIRED:
                    pass
                case _:
                    assert_never(effect)

            previous = apply_transition(
                session,
                reservation,
                ReservationStatus.CANCELLED,
                actor=actor,
                payload={"reason": reason, "deposit_effect": effect.value},
            )
            summary = ledger_service.summarize(reservation)
            await domain_events.commit_and_publish(session)
            return ActionResult.ok(
                previous_status=previous.value,
                status=ReservationStatus.CANCELLED.value,
                deposit_effect=effect.value,
                deposit_status=reservation.deposit_status.value,
                deposit_return_required=effect is CancelDepositEffect.DEPOSIT_RETURN_REQUIRED,
                deposit_to_return=str(summary.deposit_to_return),
            )
    except PaymentsError as exc:
        logger.warning("Cancel of reservation %s refused: %s", reservation_id, exc.code)
        return ActionResult.from_error(exc)


async def _cancel_open_intent(reservation: Reservation, *, gateways: GatewayProvider) -> None:
    """Best effort: the pending deposit state itself is left unchanged."""
    intent_id = reservation.deposit_intent_ref
    if not intent_id:
        return
    try:
        gateway = store_service.gateway_for_store(gateways, reservation.store)
        await gateway.cancel_payment_intent(intent_id)
    except PaymentsError as exc:
        logger.warning(
            "Could not cancel open deposit intent %s for reservation %s: %s",
            intent_id,
            reservation.id,
            exc.code,
        )


__all__ = [
    "CANCEL_DEPOSIT_EFFECTS",
    "CancelDepositEffect",
    "ReservationWarning",
    "StatusAction",
    "apply_transition",
    "can_transition",
    "cancel",
    "cancel_effect",
    "change_status",
    "compute_warnings",
    "get_warnings",
]
