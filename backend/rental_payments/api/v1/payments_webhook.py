"""Stripe webhook receiver and the local simulator."""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Body, HTTPException, Request, status

from rental_payments.api.deps import GatewaysDep, SessionDep
from rental_payments.core.config import get_settings
from rental_payments.core.errors import ProviderUnavailable, SignatureInvalid
from rental_payments.core.settings import get_payment_settings
from rental_payments.services import webhook_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments-webhook"])


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def handle_webhook(
    request: Request, session: SessionDep, gateways: GatewaysDep
) -> dict[str, Any]:
    settings = get_payment_settings()
    payload_bytes = await request.body()

    try:
        if settings.payments_webhook_verify:
            outcome = await webhook_service.handle_webhook(
                session,
                payload=payload_bytes,
                signature=request.headers.get("Stripe-Signature"),
                secret=settings.stripe_connect_webhook_secret,
                gateways=gateways,
            )
        else:
            try:
                payload = json.loads(payload_bytes)
            except ValueError as exc:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload"
                ) from exc
            outcome = await webhook_service.process_event(
                session, payload, gateways=gateways
            )
    except SignatureInvalid as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=exc.code
        ) from exc
    except ProviderUnavailable as exc:
        # Non-2xx makes the provider redeliver later.
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.code
        ) from exc

    return outcome.as_dict()


@router.post("/dev/simulate-webhook", status_code=status.HTTP_200_OK)
async def simulate_webhook(
    session: SessionDep,
    gateways: GatewaysDep,
    payload: dict[str, Any] = Body(...),
) -> dict[str, Any]:
    settings = get_settings()
    if settings.app_env.lower() != "local":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Simulation route available in local environment only",
        )

    enriched_payload = dict(payload)
    enriched_payload.setdefault("id", f"evt_simulated_{uuid4().hex}")
    logger.info("Simulating webhook %s", enriched_payload.get("type"))
    try:
        outcome = await webhook_service.process_event(
            session, enriched_payload, gateways=gateways
        )
    except ProviderUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.code
        ) from exc
    return outcome.as_dict()
