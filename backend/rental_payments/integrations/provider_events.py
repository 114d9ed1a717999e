"""Typed views over Stripe Connect webhook events.

Each supported event type is parsed into its own frozen dataclass so the
reconciler can dispatch with an exhaustive ``match``. Anything the platform
does not act on becomes :class:`UnknownEvent`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Intent metadata ``type`` values that mark a deposit hold.
DEPOSIT_INTENT_TYPES = frozenset({"deposit_hold", "deposit_authorization_request"})


class MalformedEvent(ValueError):
    """The signed payload does not have the shape of a provider event."""


@dataclass(frozen=True, slots=True)
class EventEnvelope:
    event_id: str
    event_type: str
    account_ref: str | None
    occurred_at: datetime
    livemode: bool = False


@dataclass(frozen=True, slots=True)
class CheckoutSessionCompleted:
    envelope: EventEnvelope
    session_id: str
    payment_status: str | None
    payment_intent: str | None
    customer: str | None
    amount_total: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CheckoutSessionExpired:
    envelope: EventEnvelope
    session_id: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PaymentIntentAuthorized:
    """``payment_intent.amount_capturable_updated``: funds are held."""

    envelope: EventEnvelope
    intent_id: str
    amount_capturable: int
    currency: str
    payment_method: str | None
    customer: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PaymentIntentCanceled:
    envelope: EventEnvelope
    intent_id: str
    cancellation_reason: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PaymentIntentSucceeded:
    envelope: EventEnvelope
    intent_id: str
    amount_received: int
    currency: str
    latest_charge: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PaymentIntentFailed:
    envelope: EventEnvelope
    intent_id: str
    error_code: str | None
    error_message: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ChargeRefunded:
    envelope: EventEnvelope
    charge_id: str
    payment_intent: str | None
    amount: int
    amount_refunded: int
    fully_refunded: bool
    currency: str


@dataclass(frozen=True, slots=True)
class AccountUpdated:
    envelope: EventEnvelope
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


@dataclass(frozen=True, slots=True)
class UnknownEvent:
    envelope: EventEnvelope


CheckoutEvent = CheckoutSessionCompleted | CheckoutSessionExpired
PaymentIntentEvent = (
    PaymentIntentAuthorized
    | PaymentIntentCanceled
    | PaymentIntentSucceeded
    | PaymentIntentFailed
)
ProviderEventPayload = (
    CheckoutEvent | PaymentIntentEvent | ChargeRefunded | AccountUpdated | UnknownEvent
)


def _ref(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def _metadata(obj: Mapping[str, Any]) -> dict[str, str]:
    raw = obj.get("metadata") or {}
    if not isinstance(raw, Mapping):
        raise MalformedEvent("metadata must be an object")
    return {str(key): str(value) for key, value in raw.items() if value is not None}


def _int(obj: Mapping[str, Any], key: str) -> int:
    value = obj.get(key) or 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEvent(f"{key} must be an integer")
    return value


def _required_id(obj: Mapping[str, Any]) -> str:
    value = obj.get("id")
    if not isinstance(value, str) or not value:
        raise MalformedEvent("event object has no id")
    return value


def _occurred_at(payload: Mapping[str, Any]) -> datetime:
    created = payload.get("created")
    if isinstance(created, (int, float)) and not isinstance(created, bool):
        return datetime.fromtimestamp(created, tz=UTC)
    return datetime.now(UTC)


def parse_event(payload: Mapping[str, Any]) -> ProviderEventPayload:
    """Turn a verified webhook payload into a typed event.

    Raises :class:`MalformedEvent` when required fields are missing or have
    the wrong type; unsupported event types are returned as
    :class:`UnknownEvent`.
    """

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEvent("event has no id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("event has no type")
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise MalformedEvent("event has no data.object")

    account = payload.get("account")
    envelope = EventEnvelope(
        event_id=event_id,
        event_type=event_type,
        account_ref=account if isinstance(account, str) else None,
        occurred_at=_occurred_at(payload),
        livemode=bool(payload.get("livemode", False)),
    )
    currency = str(obj.get("currency") or "").upper()

    if event_type == "checkout.session.completed":
        return CheckoutSessionCompleted(
            envelope=envelope,
            session_id=_required_id(obj),
            payment_status=obj.get("payment_status"),
            payment_intent=_ref(obj.get("payment_intent")),
            customer=_ref(obj.get("customer")),
            amount_total=_int(obj, "amount_total"),
            currency=currency,
            metadata=_metadata(obj),
        )
    if event_type == "checkout.session.expired":
        return CheckoutSessionExpired(
            envelope=envelope, session_id=_required_id(obj), metadata=_metadata(obj)
        )
    if event_type == "payment_intent.amount_capturable_updated":
        return PaymentIntentAuthorized(
            envelope=envelope,
            intent_id=_required_id(obj),
            amount_capturable=_int(obj, "amount_capturable"),
            currency=currency,
            payment_method=_ref(obj.get("payment_method")),
            customer=_ref(obj.get("customer")),
            metadata=_metadata(obj),
        )
    if event_type == "payment_intent.canceled":
        return PaymentIntentCanceled(
            envelope=envelope,
            intent_id=_required_id(obj),
            cancellation_reason=obj.get("cancellation_reason"),
            metadata=_metadata(obj),
        )
    if event_type == "payment_intent.succeeded":
        return PaymentIntentSucceeded(
            envelope=envelope,
            intent_id=_required_id(obj),
            amount_received=_int(obj, "amount_received"),
            currency=currency,
            latest_charge=_ref(obj.get("latest_charge")),
            metadata=_metadata(obj),
        )
    if event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        if not isinstance(error, Mapping):
            error = {}
        return PaymentIntentFailed(
            envelope=envelope,
            intent_id=_required_id(obj),
            error_code=error.get("decline_code") or error.get("code"),
            error_message=error.get("message"),
            metadata=_metadata(obj),
        )
    if event_type == "charge.refunded":
        return ChargeRefunded(
            envelope=envelope,
            charge_id=_required_id(obj),
            payment_intent=_ref(obj.get("payment_intent")),
            amount=_int(obj, "amount"),
            amount_refunded=_int(obj, "amount_refunded"),
            fully_refunded=bool(obj.get("refunded", False)),
            currency=currency,
        )
    if event_type == "account.updated":
        return AccountUpdated(
            envelope=envelope,
            account_id=_required_id(obj),
            charges_enabled=bool(obj.get("charges_enabled", False)),
            payouts_enabled=bool(obj.get("payouts_enabled", False)),
            details_submitted=bool(obj.get("details_submitted", False)),
        )
    return UnknownEvent(envelope=envelope)


def is_deposit_intent(metadata: Mapping[str, str]) -> bool:
    return metadata.get("type") in DEPOSIT_INTENT_TYPES


__all__ = [
    "AccountUpdated",
    "ChargeRefunded",
    "CheckoutEvent",
    "CheckoutSessionCompleted",
    "CheckoutSessionExpired",
    "DEPOSIT_INTENT_TYPES",
    "EventEnvelope",
    "MalformedEvent",
    "PaymentIntentAuthorized",
    "PaymentIntentCanceled",
    "PaymentIntentEvent",
    "PaymentIntentFailed",
    "PaymentIntentSucceeded",
    "ProviderEventPayload",
    "UnknownEvent",
    "is_deposit_intent",
    "parse_event",
]
