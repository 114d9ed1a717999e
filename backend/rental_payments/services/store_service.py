"""Store payment configuration and connected-account onboarding."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.core.errors import ActionResult, PaymentsError, ValidationError
from rental_payments.core.money import normalize_currency
from rental_payments.core.settings import get_payment_settings
from rental_payments.integrations import GatewayProvider, PaymentGateway
from rental_payments.models import Reservation, Store
from rental_payments.services import audit_service
from rental_payments.services.locks import load_store

logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_setting(*sources: Any, default: Any = _MISSING) -> Any:
    """Return the first source that is set, in the order given.

    Empty strings count as unset. Without a ``default`` an all-empty chain
    raises ``LookupError``.
    """

    for value in sources:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    if default is _MISSING:
        raise LookupError("No setting source provided a value")
    return default


def _store_setting(store: Store | None, key: str) -> Any:
    if store is None or not isinstance(store.settings, dict):
        return None
    return store.settings.get(key)


def store_currency(store: Store) -> str:
    return normalize_currency(
        resolve_setting(
            store.currency,
            _store_setting(store, "currency"),
            default=get_payment_settings().default_currency,
        )
    )


def reservation_currency(reservation: Reservation) -> str:
    """Currency precedence: reservation, store column, store settings, platform."""
    store = reservation.store
    return normalize_currency(
        resolve_setting(
            reservation.currency,
            store.currency if store is not None else None,
            _store_setting(store, "currency"),
            default=get_payment_settings().default_currency,
        )
    )


def checkout_locale(reservation: Reservation) -> str:
    return resolve_setting(
        _store_setting(reservation.store, "checkout_locale"),
        _store_setting(reservation.store, "locale"),
        default="auto",
    )


def gateway_for_store(gateways: GatewayProvider, store: Store) -> PaymentGateway:
    """Per-store client; a store without a sub-account cannot take online payment."""
    if not store.stripe_account_id:
        raise ValidationError(
            "Store has not connected a payment account", code="stripe_not_configured"
        )
    return gateways.for_account(store.stripe_account_id)


async def connect_store(
    session: AsyncSession,
    *,
    store_id: uuid.UUID,
    gateways: GatewayProvider,
    country: str | None = None,
    actor: str | None = None,
) -> ActionResult:
    """Create the store's Express sub-account unless it already has one."""

    store = await load_store(session, store_id)
    if store.stripe_account_id:
        return ActionResult.ok(account_id=store.stripe_account_id, created=False)
    if not store.email:
        return ActionResult.fail("store_email_required", "Store needs an email address")

    try:
        account_id = await gateways.platform().create_sub_account(
            email=store.email,
            country=(country or store.country or "FR").upper(),
            metadata={"store_id": str(store.id), "store_slug": store.slug},
        )
    except PaymentsError as exc:
        logger.warning("Connecting store %s failed: %s", store.id, exc.code)
        return ActionResult.from_error(exc)

    store.stripe_account_id = account_id
    audit_service.record_activity(
        session,
        activity_type="store.account_connected",
        store_id=store.id,
        payload={"account_id": account_id},
        actor=actor,
    )
    await session.commit()
    logger.info("Store %s connected to account %s", store.id, account_id)
    return ActionResult.ok(account_id=account_id, created=True)


async def create_onboarding_link(
    session: AsyncSession,
    *,
    store_id: uuid.UUID,
    gateways: GatewayProvider,
    return_url: str | None = None,
    refresh_url: str | None = None,
) -> ActionResult:
    store = await load_store(session, store_id)
    base_url = get_payment_settings().public_app_url.rstrip("/")
    try:
        gateway = gateway_for_store(gateways, store)
        url = await gateway.create_onboarding_link(
            return_url=return_url or f"{base_url}/dashboard/settings/payments?stripe=success",
            refresh_url=refresh_url or f"{base_url}/dashboard/settings/payments?stripe=refresh",
        )
    except PaymentsError as exc:
        return ActionResult.from_error(exc)
    return ActionResult.ok(url=url)


def _apply_flags(
    store: Store, *, charges_enabled: bool, payouts_enabled: bool, details_submitted: bool
) -> bool:
    changed = (
        store.charges_enabled != charges_enabled
        or store.payouts_enabled != payouts_enabled
        or store.details_submitted != details_submitted
    )
    store.charges_enabled = charges_enabled
    store.payouts_enabled = payouts_enabled
    store.details_submitted = details_submitted
    return changed


async def refresh_account_status(
    session: AsyncSession, *, store_id: uuid.UUID, gateways: GatewayProvider
) -> ActionResult:
    store = await load_store(session, store_id)
    try:
        status = await gateway_for_store(gateways, store).get_sub_account_status()
    except PaymentsError as exc:
        return ActionResult.from_error(exc)

    _apply_flags(
        store,
        charges_enabled=status.charges_enabled,
        payouts_enabled=status.payouts_enabled,
        details_submitted=status.details_submitted,
    )
    await session.commit()
    return ActionResult.ok(
        account_id=status.account_id,
        charges_enabled=status.charges_enabled,
        payouts_enabled=status.payouts_enabled,
        details_submitted=status.details_submitted,
        currently_due=status.currently_due,
        past_due=status.past_due,
    )


async def apply_account_update(
    session: AsyncSession,
    *,
    account_id: str,
    charges_enabled: bool,
    payouts_enabled: bool,
    details_submitted: bool,
) -> Store | None:
    """Webhook bookkeeping for ``account.updated``; the caller commits."""

    store = (
        await session.execute(select(Store).where(Store.stripe_account_id == account_id))
    ).scalar_one_or_none()
    if store is None:
        return None
    if _apply_flags(
        store,
        charges_enabled=charges_enabled,
        payouts_enabled=payouts_enabled,
        details_submitted=details_submitted,
    ):
        audit_service.record_activity(
            session,
            activity_type="store.account_updated",
            store_id=store.id,
            payload={
                "charges_enabled": charges_enabled,
                "payouts_enabled": payouts_enabled,
                "details_submitted": details_submitted,
            },
            actor="webhook",
        )
    return store
