"""Common API dependencies."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.core.errors import ActionResult
from rental_payments.core.settings import get_payment_settings
from rental_payments.db.session import get_session
from rental_payments.integrations import GatewayProvider, StripeGatewayProvider
from rental_payments.schemas.common import ActionResponse

_NOT_FOUND_CODES = {"not_found"}
_CONFLICT_CODES = {
    "invalid_state",
    "invalid_transition",
    "amount_exceeds_authorization",
    "warnings_require_acknowledgement",
    "deposit_already_authorized",
    "deposit_closed",
    "reservation_closed",
    "payment_not_refundable",
    "authorization_no_longer_held",
}
_PAYMENT_REQUIRED_CODES = {"provider_rejected"}


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide an async database session."""
    async for session in get_session():
        yield session


@lru_cache
def _stripe_gateways() -> StripeGatewayProvider:
    settings = get_payment_settings()
    return StripeGatewayProvider(
        settings.stripe_secret_key,
        timeout_seconds=settings.stripe_timeout_seconds,
        max_read_attempts=settings.stripe_max_read_attempts,
    )


def get_gateways() -> GatewayProvider:
    """Provider clients built from the platform credentials."""
    return _stripe_gateways()


def get_actor(
    x_actor: Annotated[str | None, Header(max_length=255)] = None,
) -> str | None:
    """Staff identifier recorded in the activity log."""
    return x_actor or None


def status_for(result: ActionResult) -> int:
    if result.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    code = result.error_code or ""
    if code in _NOT_FOUND_CODES:
        return status.HTTP_404_NOT_FOUND
    if code in _CONFLICT_CODES:
        return status.HTTP_409_CONFLICT
    if code in _PAYMENT_REQUIRED_CODES:
        return status.HTTP_402_PAYMENT_REQUIRED
    return status.HTTP_400_BAD_REQUEST


def respond(result: ActionResult) -> ActionResponse:
    """Return the success envelope or raise the mapped HTTP error."""
    body = ActionResponse.from_result(result)
    if not result.success:
        raise HTTPException(status_code=status_for(result), detail=body.model_dump())
    return body


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]
GatewaysDep = Annotated[GatewayProvider, Depends(get_gateways)]
ActorDep = Annotated[str | None, Depends(get_actor)]
