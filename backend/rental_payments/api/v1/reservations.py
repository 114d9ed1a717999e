"""Reservation checkout and lifecycle endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Body

from rental_payments.api.deps import ActorDep, GatewaysDep, SessionDep, respond
from rental_payments.schemas.common import ActionResponse
from rental_payments.schemas.reservations import (
    CancelRequest,
    CheckoutCreate,
    PaymentRequestCreate,
    StatusChangeRequest,
)
from rental_payments.services import checkout_service, reservation_service
from rental_payments.services.checkout_service import CheckoutItem

router = APIRouter()


@router.post("/{reservation_id}/checkout", response_model=ActionResponse)
async def create_checkout(
    reservation_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
    payload: CheckoutCreate = Body(default_factory=CheckoutCreate),
) -> ActionResponse:
    """Open the hosted checkout for the rental."""
    items = None
    if payload.line_items:
        items = [
            CheckoutItem(
                name=line.name,
                unit_amount=line.unit_amount,
                quantity=line.quantity,
                description=line.description,
            )
            for line in payload.line_items
        ]
    return respond(
        await checkout_service.create_rental_checkout(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            line_items=items,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
            actor=actor,
        )
    )


@router.post("/{reservation_id}/payment-requests", response_model=ActionResponse)
async def create_payment_request(
    reservation_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
    payload: PaymentRequestCreate = Body(default_factory=PaymentRequestCreate),
) -> ActionResponse:
    return respond(
        await checkout_service.create_payment_request(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            amount=payload.amount,
            description=payload.description,
            actor=actor,
        )
    )


@router.get("/{reservation_id}/warnings", response_model=ActionResponse)
async def get_warnings(reservation_id: UUID, session: SessionDep) -> ActionResponse:
    return respond(
        await reservation_service.get_warnings(session, reservation_id=reservation_id)
    )


@router.post("/{reservation_id}/status", response_model=ActionResponse)
async def change_status(
    reservation_id: UUID,
    payload: StatusChangeRequest,
    session: SessionDep,
    actor: ActorDep,
) -> ActionResponse:
    """Confirm, reject, pick up or return a reservation."""
    return respond(
        await reservation_service.change_status(
            session,
            reservation_id=reservation_id,
            action=payload.action,
            acknowledge_warnings=payload.acknowledge_warnings,
            reason=payload.reason,
            actor=actor,
        )
    )


@router.post("/{reservation_id}/cancel", response_model=ActionResponse)
async def cancel_reservation(
    reservation_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
    payload: CancelRequest = Body(default_factory=CancelRequest),
) -> ActionResponse:
    return respond(
        await reservation_service.cancel(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            reason=payload.reason,
            actor=actor,
        )
    )
