"""Ledger endpoints: listing, offline payments, deposit returns and refunds."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, status

from rental_payments.api.deps import ActorDep, GatewaysDep, SessionDep, respond
from rental_payments.schemas.common import ActionResponse
from rental_payments.schemas.payments import (
    DamageCreate,
    DepositReturnCreate,
    PaymentCreate,
    PaymentRead,
    RefundRequest,
)
from rental_payments.models.mixins import coerce_utc
from rental_payments.services import ledger_service
from rental_payments.services.locks import load_reservation

router = APIRouter()


@router.get("/reservations/{reservation_id}/payments", response_model=ActionResponse)
async def list_payments(reservation_id: UUID, session: SessionDep) -> ActionResponse:
    """Ledger rows with the derived summary."""
    reservation = await load_reservation(session, reservation_id)
    payments = sorted(reservation.payments, key=lambda payment: coerce_utc(payment.created_at))
    return ActionResponse(
        success=True,
        data={
            "payments": [
                PaymentRead.model_validate(payment).model_dump(mode="json")
                for payment in payments
            ],
            "summary": ledger_service.summarize(reservation).as_dict(),
        },
    )


@router.post(
    "/reservations/{reservation_id}/payments",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_payment(
    reservation_id: UUID,
    payload: PaymentCreate,
    session: SessionDep,
    actor: ActorDep,
) -> ActionResponse:
    return respond(
        await ledger_service.record_payment(
            session,
            reservation_id=reservation_id,
            payment_type=payload.type,
            amount=payload.amount,
            method=payload.method,
            paid_at=payload.paid_at,
            notes=payload.notes,
            actor=actor,
        )
    )


@router.post(
    "/reservations/{reservation_id}/deposit-returns",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def return_deposit(
    reservation_id: UUID,
    payload: DepositReturnCreate,
    session: SessionDep,
    actor: ActorDep,
) -> ActionResponse:
    return respond(
        await ledger_service.return_deposit(
            session,
            reservation_id=reservation_id,
            amount=payload.amount,
            method=payload.method,
            notes=payload.notes,
            actor=actor,
        )
    )


@router.post(
    "/reservations/{reservation_id}/damages",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_damage(
    reservation_id: UUID,
    payload: DamageCreate,
    session: SessionDep,
    actor: ActorDep,
) -> ActionResponse:
    return respond(
        await ledger_service.record_damage(
            session,
            reservation_id=reservation_id,
            amount=payload.amount,
            method=payload.method,
            notes=payload.notes,
            actor=actor,
        )
    )


@router.post("/payments/{payment_id}/refund", response_model=ActionResponse)
async def refund_payment(
    payment_id: UUID,
    payload: RefundRequest,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
) -> ActionResponse:
    """Request a provider refund; the ledger follows the refund webhook."""
    return respond(
        await ledger_service.refund_payment(
            session,
            payment_id=payment_id,
            gateways=gateways,
            amount=payload.amount,
            reason=payload.reason,
            actor=actor,
        )
    )
