"""Connected-account onboarding for stores."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Body, status

from rental_payments.api.deps import ActorDep, GatewaysDep, SessionDep, respond
from rental_payments.schemas.common import ActionResponse
from rental_payments.schemas.stores import OnboardingLinkRequest, StoreConnectRequest
from rental_payments.services import store_service

router = APIRouter()


@router.post(
    "/{store_id}/connect",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK,
    summary="Create the store's payment sub-account",
)
async def connect_store(
    store_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    actor: ActorDep,
    payload: StoreConnectRequest = Body(default_factory=StoreConnectRequest),
) -> ActionResponse:
    return respond(
        await store_service.connect_store(
            session,
            store_id=store_id,
            gateways=gateways,
            country=payload.country,
            actor=actor,
        )
    )


@router.post("/{store_id}/onboarding-link", response_model=ActionResponse)
async def create_onboarding_link(
    store_id: UUID,
    session: SessionDep,
    gateways: GatewaysDep,
    payload: OnboardingLinkRequest = Body(default_factory=OnboardingLinkRequest),
) -> ActionResponse:
    return respond(
        await store_service.create_onboarding_link(
            session,
            store_id=store_id,
            gateways=gateways,
            return_url=payload.return_url,
            refresh_url=payload.refresh_url,
        )
    )


@router.post("/{store_id}/account-status", response_model=ActionResponse)
async def refresh_account_status(
    store_id: UUID, session: SessionDep, gateways: GatewaysDep
) -> ActionResponse:
    """Pull capability flags from the provider."""
    return respond(
        await store_service.refresh_account_status(
            session, store_id=store_id, gateways=gateways
        )
    )
