"""Deposit hold endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Body

from rental_payments.api.deps import ActorDep, GatewaysDep, SessionDep, respond
from rental_payments.schemas.common import ActionResponse
from rental_payments.schemas.reservations import (
    DepositAuthorizeRequest,
    DepositCaptureRequest,
    DepositReleaseRequest,
)
from rental_payments.services import deposit_service

router = APIRouter()


@router.post("/{reservation_id}/deposit/authorize", response_model=ActionResponse)
async def authorize_deposit(
    reservation_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
    payload: DepositAuthorizeRequest = Body(default_factory=DepositAuthorizeRequest),
) -> ActionResponse:
    """Place a manual-capture hold, interactively or on the saved card."""
    return respond(
        await deposit_service.request_authorization(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            mode=payload.mode,
            amount=payload.amount,
            currency=payload.currency,
            actor=actor,
        )
    )


@router.post("/{reservation_id}/deposit/capture", response_model=ActionResponse)
async def capture_deposit(
    reservation_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
    payload: DepositCaptureRequest = Body(default_factory=DepositCaptureRequest),
) -> ActionResponse:
    return respond(
        await deposit_service.capture(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            amount=payload.amount,
            actor=actor,
        )
    )


@router.post("/{reservation_id}/deposit/release", response_model=ActionResponse)
async def release_deposit(
    reservation_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
    payload: DepositReleaseRequest = Body(default_factory=DepositReleaseRequest),
) -> ActionResponse:
    return respond(
        await deposit_service.release(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            reason=payload.reason,
            actor=actor,
        )
    )
