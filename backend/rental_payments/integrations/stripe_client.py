"""Stripe Connect SDK wrapper scoped to one store sub-account."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, TypeVar

import stripe
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from rental_payments.core.errors import (
    ProviderRejected,
    ProviderUnavailable,
    SignatureInvalid,
    ValidationError,
)

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("rental_payments.security")

T = TypeVar("T")

WEBHOOK_TOLERANCE_SECONDS = 300


@dataclass(slots=True)
class PaymentIntent:
    """Simplified payment intent payload."""

    id: str
    status: str
    amount: int
    currency: str
    amount_capturable: int = 0
    amount_received: int = 0
    client_secret: str | None = None
    payment_method: str | None = None
    customer: str | None = None
    latest_charge: str | None = None
    last_error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CheckoutSession:
    id: str
    url: str | None
    status: str | None
    payment_status: str | None
    payment_intent: str | None
    customer: str | None
    amount_total: int
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CheckoutLineItem:
    name: str
    unit_amount: int
    quantity: int = 1
    description: str | None = None


@dataclass(slots=True)
class AccountStatus:
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    currently_due: list[str] = field(default_factory=list)
    past_due: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Refund:
    id: str
    status: str
    amount: int
    currency: str


class PaymentGateway(Protocol):
    """Operations the services need from the payment provider."""

    account_id: str | None

    async def create_sub_account(
        self, *, email: str, country: str, metadata: dict[str, str] | None = None
    ) -> str: ...

    async def create_onboarding_link(self, *, return_url: str, refresh_url: str) -> str: ...

    async def get_sub_account_status(self) -> AccountStatus: ...

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        manual_capture: bool = True,
        customer: str | None = None,
        payment_method: str | None = None,
        confirm: bool = False,
        off_session: bool = False,
        metadata: dict[str, str] | None = None,
        idempotency_seed: str | None = None,
    ) -> PaymentIntent: ...

    async def confirm_payment_intent(
        self, intent_id: str, *, payment_method_ref: str, off_session: bool
    ) -> PaymentIntent: ...

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent: ...

    async def capture_payment_intent(
        self, intent_id: str, *, amount: int | None = None
    ) -> PaymentIntent: ...

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent: ...

    async def create_checkout_session(
        self,
        *,
        line_items: list[CheckoutLineItem],
        currency: str,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
        metadata: dict[str, str],
        save_payment_method: bool,
        application_fee: int | None = None,
        locale: str | None = None,
        idempotency_seed: str | None = None,
    ) -> CheckoutSession: ...

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession: ...

    async def create_refund(
        self,
        charge_ref: str,
        *,
        amount: int | None = None,
        reason: str = "requested_by_customer",
        idempotency_seed: str | None = None,
    ) -> Refund: ...


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _ref(value: Any) -> str | None:
    """Expanded objects and bare ids both collapse to the id string."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def _as_plain_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    return {}


def _to_intent(raw: Any) -> PaymentIntent:
    last_error = _field(raw, "last_payment_error")
    return PaymentIntent(
        id=str(_field(raw, "id")),
        status=str(_field(raw, "status", "unknown")),
        amount=int(_field(raw, "amount", 0)),
        currency=str(_field(raw, "currency", "")).upper(),
        amount_capturable=int(_field(raw, "amount_capturable", 0)),
        amount_received=int(_field(raw, "amount_received", 0)),
        client_secret=_field(raw, "client_secret"),
        payment_method=_ref(_field(raw, "payment_method")),
        customer=_ref(_field(raw, "customer")),
        latest_charge=_ref(_field(raw, "latest_charge")),
        last_error_code=_field(last_error, "decline_code") or _field(last_error, "code"),
        metadata=_as_plain_dict(_field(raw, "metadata")),
    )


def _to_session(raw: Any) -> CheckoutSession:
    return CheckoutSession(
        id=str(_field(raw, "id")),
        url=_field(raw, "url"),
        status=_field(raw, "status"),
        payment_status=_field(raw, "payment_status"),
        payment_intent=_ref(_field(raw, "payment_intent")),
        customer=_ref(_field(raw, "customer")),
        amount_total=int(_field(raw, "amount_total", 0)),
        currency=str(_field(raw, "currency", "")).upper(),
        metadata=_as_plain_dict(_field(raw, "metadata")),
    )


def translate_stripe_error(exc: Exception, action: str) -> Exception:
    """Map SDK exceptions onto the payments error taxonomy."""

    if isinstance(exc, stripe.CardError):
        decline_code = getattr(exc, "code", None)
        error = getattr(exc, "error", None)
        decline_code = _field(error, "decline_code") or decline_code
        return ProviderRejected(
            f"{action} declined: {getattr(exc, 'user_message', None) or exc}",
            decline_code=decline_code,
        )
    if isinstance(
        exc, (stripe.InvalidRequestError, stripe.IdempotencyError, stripe.PermissionError)
    ):
        return ProviderRejected(
            f"{action} rejected: {getattr(exc, 'user_message', None) or exc}",
            decline_code=getattr(exc, "code", None),
        )
    return ProviderUnavailable(f"{action} failed: {type(exc).__name__}")


class StripeGatewayClient:
    """Stripe Connect client bound to a single connected (store) account.

    All provider failures leave this class as :class:`ProviderUnavailable`,
    :class:`ProviderRejected` or :class:`SignatureInvalid`. Reads are retried
    with bounded exponential backoff; writes carry an idempotency key and are
    never retried here.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        account_id: str | None = None,
        timeout_seconds: float = 20.0,
        max_read_attempts: int = 3,
        retry_wait_seconds: float = 0.5,
        idempotency_prefix: str = "rp",
        client: Any | None = None,
    ) -> None:
        self.account_id = account_id
        self._idempotency_prefix = idempotency_prefix
        self._max_read_attempts = max(1, max_read_attempts)
        self._retry_wait_seconds = retry_wait_seconds
        if client is None:
            client = stripe.StripeClient(
                secret_key,
                max_network_retries=0,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
            )
        self._client = client

    def for_account(self, account_id: str) -> "StripeGatewayClient":
        """Return a client bound to another connected account, sharing the transport."""
        bound = StripeGatewayClient.__new__(StripeGatewayClient)
        bound.account_id = account_id
        bound._idempotency_prefix = self._idempotency_prefix
        bound._max_read_attempts = self._max_read_attempts
        bound._retry_wait_seconds = self._retry_wait_seconds
        bound._client = self._client
        return bound

    def _options(self, idempotency_seed: str | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.account_id:
            options["stripe_account"] = self.account_id
        if idempotency_seed:
            options["idempotency_key"] = f"{self._idempotency_prefix}_{idempotency_seed}"
        return options

    async def _write(self, action: str, call: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(call)
        except stripe.StripeError as exc:
            translated = translate_stripe_error(exc, action)
            logger.warning(
                "Stripe %s failed for account %s: %s",
                action,
                self.account_id,
                type(exc).__name__,
            )
            raise translated from exc

    async def _read(self, action: str, call: Callable[[], T]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_read_attempts),
            wait=wait_exponential(multiplier=self._retry_wait_seconds, max=8),
            retry=retry_if_exception_type(ProviderUnavailable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._write(action, call)
        raise AssertionError("unreachable")  # pragma: no cover

    # Sub-account lifecycle -------------------------------------------------

    async def create_sub_account(
        self,
        *,
        email: str,
        country: str,
        business_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        params: dict[str, Any] = {
            "type": "express",
            "email": email,
            "country": country,
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            "metadata": {"platform": "rental_payments", **(metadata or {})},
        }
        if business_type:
            params["business_type"] = business_type
        account = await self._write(
            "create account",
            lambda: self._client.accounts.create(
                params=params, options={"idempotency_key": f"{self._idempotency_prefix}_acct_{email}"}
            ),
        )
        return str(_field(account, "id"))

    async def create_onboarding_link(self, *, return_url: str, refresh_url: str) -> str:
        if not self.account_id:
            raise ProviderRejected("Store has no connected account")
        link = await self._write(
            "create account link",
            lambda: self._client.account_links.create(
                params={
                    "account": self.account_id,
                    "refresh_url": refresh_url,
                    "return_url": return_url,
                    "type": "account_onboarding",
                    "collect": "eventually_due",
                }
            ),
        )
        return str(_field(link, "url"))

    async def get_sub_account_status(self) -> AccountStatus:
        if not self.account_id:
            raise ProviderRejected("Store has no connected account")
        account_id = self.account_id
        account = await self._read(
            "retrieve account", lambda: self._client.accounts.retrieve(account_id)
        )
        requirements = _field(account, "requirements")
        return AccountStatus(
            account_id=account_id,
            charges_enabled=bool(_field(account, "charges_enabled", False)),
            payouts_enabled=bool(_field(account, "payouts_enabled", False)),
            details_submitted=bool(_field(account, "details_submitted", False)),
            currently_due=list(_field(requirements, "currently_due", [])),
            past_due=list(_field(requirements, "past_due", [])),
        )

    # Payment intents -------------------------------------------------------

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        manual_capture: bool = True,
        customer: str | None = None,
        payment_method: str | None = None,
        confirm: bool = False,
        off_session: bool = False,
        metadata: dict[str, str] | None = None,
        idempotency_seed: str | None = None,
    ) -> PaymentIntent:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": dict(metadata or {}),
        }
        if manual_capture:
            params["capture_method"] = "manual"
        if customer:
            params["customer"] = customer
        if payment_method:
            params["payment_method"] = payment_method
        if confirm:
            params["confirm"] = True
            params["off_session"] = off_session
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        intent = await self._write(
            "create payment intent",
            lambda: self._client.payment_intents.create(
                params=params, options=self._options(idempotency_seed or uuid.uuid4().hex)
            ),
        )
        return _to_intent(intent)

    async def confirm_payment_intent(
        self, intent_id: str, *, payment_method_ref: str, off_session: bool
    ) -> PaymentIntent:
        intent = await self._write(
            "confirm payment intent",
            lambda: self._client.payment_intents.confirm(
                intent_id,
                params={"payment_method": payment_method_ref, "off_session": off_session},
                options=self._options(f"confirm_{intent_id}"),
            ),
        )
        return _to_intent(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self._read(
            "retrieve payment intent",
            lambda: self._client.payment_intents.retrieve(intent_id, options=self._options()),
        )
        return _to_intent(intent)

    async def capture_payment_intent(
        self, intent_id: str, *, amount: int | None = None
    ) -> PaymentIntent:
        params: dict[str, Any] = {}
        if amount is not None:
            params["amount_to_capture"] = amount
        intent = await self._write(
            "capture payment intent",
            lambda: self._client.payment_intents.capture(
                intent_id, params=params, options=self._options(f"capture_{intent_id}")
            ),
        )
        return _to_intent(intent)

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self._write(
            "cancel payment intent",
            lambda: self._client.payment_intents.cancel(
                intent_id, options=self._options(f"cancel_{intent_id}")
            ),
        )
        return _to_intent(intent)

    # Checkout sessions -----------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        line_items: list[CheckoutLineItem],
        currency: str,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
        metadata: dict[str, str],
        save_payment_method: bool,
        application_fee: int | None = None,
        locale: str | None = None,
        idempotency_seed: str | None = None,
    ) -> CheckoutSession:
        separator = "&" if "?" in success_url else "?"
        intent_data: dict[str, Any] = {"metadata": dict(metadata)}
        if save_payment_method:
            intent_data["setup_future_usage"] = "off_session"
        if application_fee:
            intent_data["application_fee_amount"] = application_fee
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {
                            "name": item.name,
                            **({"description": item.description} if item.description else {}),
                        },
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": item.quantity,
                }
                for item in line_items
            ],
            "success_url": f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "locale": locale or "auto",
            "expires_at": int(expires_at.timestamp()),
            "metadata": dict(metadata),
            "payment_intent_data": intent_data,
        }
        if customer_email:
            params["customer_email"] = customer_email
        if save_payment_method:
            params["customer_creation"] = "always"
        session = await self._write(
            "create checkout session",
            lambda: self._client.checkout.sessions.create(
                params=params, options=self._options(idempotency_seed or uuid.uuid4().hex)
            ),
        )
        return _to_session(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        session = await self._read(
            "retrieve checkout session",
            lambda: self._client.checkout.sessions.retrieve(session_id, options=self._options()),
        )
        return _to_session(session)

    # Refunds ---------------------------------------------------------------

    async def create_refund(
        self,
        charge_ref: str,
        *,
        amount: int | None = None,
        reason: str = "requested_by_customer",
        idempotency_seed: str | None = None,
    ) -> Refund:
        """Refund a charge; each staff request needs its own ``idempotency_seed``.

        Two partial refunds of the same amount are distinct requests, so the
        key cannot be derived from the charge and amount alone.
        """
        params: dict[str, Any] = {"charge": charge_ref, "reason": reason}
        if amount is not None:
            params["amount"] = amount
        seed = idempotency_seed or f"refund_{charge_ref}_{uuid.uuid4().hex}"
        refund = await self._write(
            "create refund",
            lambda: self._client.refunds.create(params=params, options=self._options(seed)),
        )
        return Refund(
            id=str(_field(refund, "id")),
            status=str(_field(refund, "status", "unknown")),
            amount=int(_field(refund, "amount", 0)),
            currency=str(_field(refund, "currency", "")).upper(),
        )


class GatewayProvider(Protocol):
    """Builds gateway clients; injected wherever a provider call is needed."""

    def platform(self) -> PaymentGateway: ...

    def for_account(self, account_id: str) -> PaymentGateway: ...


class StripeGatewayProvider:
    """Creates one client per connected account from the platform credentials."""

    def __init__(
        self,
        secret_key: str | None,
        *,
        timeout_seconds: float = 20.0,
        max_read_attempts: int = 3,
    ) -> None:
        self._secret_key = secret_key
        self._timeout_seconds = timeout_seconds
        self._max_read_attempts = max_read_attempts
        self._platform: StripeGatewayClient | None = None

    def platform(self) -> StripeGatewayClient:
        if not self._secret_key:
            raise ValidationError(
                "Stripe secret key is not configured", code="stripe_not_configured"
            )
        if self._platform is None:
            self._platform = StripeGatewayClient(
                self._secret_key,
                timeout_seconds=self._timeout_seconds,
                max_read_attempts=self._max_read_attempts,
            )
        return self._platform

    def for_account(self, account_id: str) -> StripeGatewayClient:
        return self.platform().for_account(account_id)


def verify_webhook_signature(
    payload: bytes | str,
    signature: str | None,
    secret: str | None,
    *,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
) -> dict[str, Any]:
    """Verify a provider webhook and return the decoded event payload.

    Fails closed: a missing secret, missing header, bad signature or
    undecodable body all raise :class:`SignatureInvalid`.
    """

    if not secret:
        security_logger.error("Webhook received but no signing secret is configured")
        raise SignatureInvalid("Webhook secret is not configured")
    if not signature:
        security_logger.warning("Webhook rejected: missing signature header")
        raise SignatureInvalid("Missing signature header")
    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError as exc:
        security_logger.warning("Webhook rejected: body is not valid UTF-8")
        raise SignatureInvalid("Invalid webhook payload") from exc
    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        security_logger.warning("Webhook rejected: signature verification failed")
        raise SignatureInvalid("Invalid webhook signature") from exc
    try:
        event = json.loads(body)
    except ValueError as exc:
        security_logger.warning("Webhook rejected: signed payload is not JSON")
        raise SignatureInvalid("Invalid webhook payload") from exc
    if not isinstance(event, Mapping):
        raise SignatureInvalid("Invalid webhook payload")
    return dict(event)


__all__ = [
    "AccountStatus",
    "CheckoutLineItem",
    "CheckoutSession",
    "GatewayProvider",
    "PaymentGateway",
    "PaymentIntent",
    "Refund",
    "StripeGatewayClient",
    "StripeGatewayProvider",
    "translate_stripe_error",
    "verify_webhook_signature",
]
