"""Webhook endpoint: signature checks, inbox dedup and reconciliation."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from typing import Any

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from rental_payments.core.errors import ProviderUnavailable
from rental_payments.db.session import get_sessionmaker
from rental_payments.models import (
    DepositEvent,
    DepositEventKind,
    DepositStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    ProviderEvent,
    ProviderEventStatus,
    ReservationActivity,
    ReservationStatus,
    Store,
)
from rental_payments.services import deposit_service
from rental_payments.services.deposit_service import AuthorizationMode

pytestmark = pytest.mark.asyncio

SECRET = "whsec_test_secret"


def _sign(body: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_type: str, obj: dict[str, Any], *, account: str = "acct_store") -> dict[str, Any]:
    return {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "account": account,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


async def _post(client: AsyncClient, event: dict[str, Any], *, secret: str = SECRET):
    body = json.dumps(event).encode()
    return await client.post(
        "/api/v1/payments/webhook",
        content=body,
        headers={"Stripe-Signature": _sign(body, secret), "Content-Type": "application/json"},
    )


async def _inbox(db_url: str) -> list[ProviderEvent]:
    async with get_sessionmaker(db_url)() as session:
        return list((await session.execute(select(ProviderEvent))).scalars().all())


async def test_bad_signature_is_rejected(app_context: dict[str, Any], db_url: str) -> None:
    client: AsyncClient = app_context["client"]
    event = _event("payment_intent.canceled", {"id": "pi_x", "metadata": {}})

    response = await _post(client, event, secret="whsec_wrong")

    assert response.status_code == 400
    assert response.json()["detail"] == "signature_invalid"
    missing = await client.post("/api/v1/payments/webhook", content=json.dumps(event))
    assert missing.status_code == 400
    assert await _inbox(db_url) == []


async def test_signed_body_with_invalid_utf8_is_rejected(
    app_context: dict[str, Any], db_url: str
) -> None:
    client: AsyncClient = app_context["client"]
    body = b'{"id": "evt_\xff"}'

    response = await client.post(
        "/api/v1/payments/webhook",
        content=body,
        headers={"Stripe-Signature": _sign(body), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "signature_invalid"
    assert await _inbox(db_url) == []


async def test_unknown_event_type_is_stored_as_ignored(
    app_context: dict[str, Any], db_url: str
) -> None:
    client: AsyncClient = app_context["client"]
    event = _event("customer.created", {"id": "cus_1"})

    response = await _post(client, event)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    rows = await _inbox(db_url)
    assert [(row.provider_event_id, row.status) for row in rows] == [
        (event["id"], ProviderEventStatus.IGNORED)
    ]


async def test_authorization_webhook_is_applied_once(
    app_context: dict[str, Any], make_reservation, reload, db_url: str, publisher
) -> None:
    client: AsyncClient = app_context["client"]
    reservation_id = await make_reservation(status=ReservationStatus.CONFIRMED)
    event = _event(
        "payment_intent.amount_capturable_updated",
        {
            "id": "pi_hold",
            "amount_capturable": 10000,
            "currency": "eur",
            "payment_method": "pm_card",
            "customer": "cus_1",
            "metadata": {"reservation_id": str(reservation_id), "type": "deposit_hold"},
        },
    )

    first = await _post(client, event)
    second = await _post(client, event)

    assert first.json()["status"] == "processed"
    assert second.json()["status"] == "duplicate"
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.AUTHORIZED
    assert reservation.deposit_intent_ref == "pi_hold"
    assert publisher.names.count("deposit.authorized") == 1
    assert len(await _inbox(db_url)) == 1


async def test_webhook_after_direct_authorization_is_a_no_op(
    app_context: dict[str, Any], gateways, make_reservation, reload, db_url: str, publisher
) -> None:
    client: AsyncClient = app_context["client"]
    reservation_id = await make_reservation(
        status=ReservationStatus.CONFIRMED,
        saved_payment_method_ref="pm_saved",
        provider_customer_ref="cus_saved",
    )
    async with get_sessionmaker(db_url)() as session:
        held = await deposit_service.request_authorization(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            mode=AuthorizationMode.OFF_SESSION,
        )
    intent_id = held.data["intent_id"]
    event = _event(
        "payment_intent.amount_capturable_updated",
        {
            "id": intent_id,
            "amount_capturable": 10000,
            "currency": "eur",
            "metadata": {"reservation_id": str(reservation_id), "type": "deposit_hold"},
        },
    )

    response = await _post(client, event)

    assert response.json()["status"] == "processed"
    assert publisher.names.count("deposit.authorized") == 1
    async with get_sessionmaker(db_url)() as session:
        ignored = (
            await session.execute(
                select(func.count())
                .select_from(ReservationActivity)
                .where(ReservationActivity.activity_type == "deposit.event_ignored")
            )
        ).scalar_one()
    assert ignored == 1
    assert (await reload(reservation_id)).deposit_status is DepositStatus.AUTHORIZED


async def test_event_from_another_account_is_dropped(
    app_context: dict[str, Any], make_reservation, reload, db_url: str
) -> None:
    client: AsyncClient = app_context["client"]
    reservation_id = await make_reservation()
    event = _event(
        "payment_intent.amount_capturable_updated",
        {
            "id": "pi_foreign",
            "amount_capturable": 10000,
            "currency": "eur",
            "metadata": {"reservation_id": str(reservation_id), "type": "deposit_hold"},
        },
        account="acct_someone_else",
    )

    response = await _post(client, event)

    assert response.status_code == 200
    assert response.json() == {
        "status": "dropped",
        "event_id": event["id"],
        "event_type": event["type"],
        "detail": "account_mismatch",
    }
    assert (await reload(reservation_id)).deposit_status is DepositStatus.NONE
    rows = await _inbox(db_url)
    assert rows[0].status is ProviderEventStatus.DROPPED


async def test_unknown_reservation_is_dropped(app_context: dict[str, Any]) -> None:
    client: AsyncClient = app_context["client"]
    event = _event(
        "payment_intent.canceled",
        {"id": "pi_1", "metadata": {"reservation_id": str(uuid.uuid4()), "type": "deposit_hold"}},
    )
    response = await _post(client, event)
    assert response.json()["detail"] == "reservation_not_found"


async def test_provider_outage_asks_for_redelivery(
    app_context: dict[str, Any], gateway, make_reservation, db_url: str
) -> None:
    client: AsyncClient = app_context["client"]
    reservation_id = await make_reservation()
    intent = gateway.add_paid_intent(amount=20000)
    gateway.fail_next("retrieve_payment_intent", ProviderUnavailable("timeout"))
    event = _event(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "payment_status": "paid",
            "payment_intent": intent.id,
            "amount_total": 20000,
            "currency": "eur",
            "metadata": {"reservation_id": str(reservation_id), "type": "rental"},
        },
    )

    response = await _post(client, event)
    assert response.status_code == 503
    assert await _inbox(db_url) == []

    retry = await _post(client, event)
    assert retry.json()["status"] == "processed"


async def test_full_refund_marks_payment_refunded(
    app_context: dict[str, Any], gateway, make_reservation, reload
) -> None:
    client: AsyncClient = app_context["client"]
    reservation_id = await make_reservation()
    intent = gateway.add_paid_intent(amount=20000)
    paid = _event(
        "checkout.session.completed",
        {
            "id": "cs_refund",
            "payment_status": "paid",
            "payment_intent": intent.id,
            "amount_total": 20000,
            "currency": "eur",
            "metadata": {"reservation_id": str(reservation_id), "type": "rental"},
        },
    )
    assert (await _post(client, paid)).json()["status"] == "processed"

    refunded = _event(
        "charge.refunded",
        {
            "id": intent.latest_charge,
            "payment_intent": intent.id,
            "amount": 20000,
            "amount_refunded": 20000,
            "refunded": True,
            "currency": "eur",
        },
    )
    assert (await _post(client, refunded)).json()["status"] == "processed"

    reservation = await reload(reservation_id)
    assert [p.status for p in reservation.payments] == [PaymentStatus.REFUNDED]


async def test_account_updated_refreshes_store_flags(
    app_context: dict[str, Any], db_url: str
) -> None:
    client: AsyncClient = app_context["client"]
    event = _event(
        "account.updated",
        {
            "id": "acct_store",
            "charges_enabled": False,
            "payouts_enabled": True,
            "details_submitted": True,
        },
    )

    response = await _post(client, event)

    assert response.json()["status"] == "processed"
    async with get_sessionmaker(db_url)() as session:
        store = await session.get(Store, app_context["store_id"])
        assert store.charges_enabled is False
        assert store.payouts_enabled is True


async def test_simulated_webhook_runs_locally(app_context: dict[str, Any]) -> None:
    client: AsyncClient = app_context["client"]
    response = await client.post(
        "/api/v1/payments/dev/simulate-webhook",
        json={"type": "customer.created", "data": {"object": {"id": "cus_1"}}},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert response.json()["event_id"].startswith("evt_simulated_")


def _capturable(intent_id: str, reservation_id: uuid.UUID) -> dict[str, Any]:
    return _event(
        "payment_intent.amount_capturable_updated",
        {
            "id": intent_id,
            "amount_capturable": 10000,
            "currency": "eur",
            "metadata": {
                "reservation_id": str(reservation_id),
                "type": "deposit_authorization_request",
            },
        },
    )


async def test_confirmation_of_a_replaced_intent_cancels_that_hold(
    app_context: dict[str, Any], gateway, gateways, make_reservation, reload, db_url: str
) -> None:
    client: AsyncClient = app_context["client"]
    reservation_id = await make_reservation(status=ReservationStatus.CONFIRMED)
    async with get_sessionmaker(db_url)() as session:
        first = await deposit_service.request_authorization(
            session, reservation_id=reservation_id, gateways=gateways
        )
        second = await deposit_service.request_authorization(
            session, reservation_id=reservation_id, gateways=gateways
        )
    first_id, second_id = first.data["intent_id"], second.data["intent_id"]

    stale = await _post(client, _capturable(first_id, reservation_id))
    current = await _post(client, _capturable(second_id, reservation_id))

    assert stale.json()["status"] == "processed"
    assert current.json()["status"] == "processed"
    cancelled = [call["intent_id"] for call in gateway.calls_to("cancel_payment_intent")]
    assert cancelled.count(first_id) == 2
    assert second_id not in cancelled
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.AUTHORIZED
    assert reservation.deposit_intent_ref == second_id
    async with get_sessionmaker(db_url)() as session:
        ignored = (
            await session.execute(
                select(ReservationActivity.payload).where(
                    ReservationActivity.activity_type == "deposit.event_ignored"
                )
            )
        ).scalars().all()
    assert [(entry["intent_id"], entry["reason"]) for entry in ignored] == [
        (first_id, "stale_intent")
    ]


async def test_concurrent_duplicate_deliveries_apply_once(
    app_context: dict[str, Any], gateways, make_reservation, reload, db_url: str
) -> None:
    client: AsyncClient = app_context["client"]
    reservation_id = await make_reservation(
        status=ReservationStatus.ONGOING,
        saved_payment_method_ref="pm_saved",
        provider_customer_ref="cus_saved",
    )
    async with get_sessionmaker(db_url)() as session:
        held = await deposit_service.request_authorization(
            session,
            reservation_id=reservation_id,
            gateways=gateways,
            mode=AuthorizationMode.OFF_SESSION,
        )
    intent_id = held.data["intent_id"]
    event = _event(
        "payment_intent.succeeded",
        {
            "id": intent_id,
            "amount_received": 10000,
            "currency": "eur",
            "latest_charge": "ch_race",
            "metadata": {"reservation_id": str(reservation_id), "type": "deposit_hold"},
        },
    )

    responses = await asyncio.gather(_post(client, event), _post(client, event))

    assert sorted(response.json()["status"] for response in responses) == [
        "duplicate",
        "processed",
    ]
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.CAPTURED
    deposits = [p for p in reservation.payments if p.type is PaymentType.DEPOSIT]
    assert [p.provider_charge_ref for p in deposits] == ["ch_race"]
    async with get_sessionmaker(db_url)() as session:
        applied = (
            await session.execute(
                select(func.count())
                .select_from(DepositEvent)
                .where(
                    DepositEvent.reservation_id == reservation_id,
                    DepositEvent.kind == DepositEventKind.CAPTURED,
                    DepositEvent.applied.is_(True),
                )
            )
        ).scalar_one()
        payments = (
            await session.execute(
                select(func.count())
                .select_from(Payment)
                .where(Payment.reservation_id == reservation_id)
            )
        ).scalar_one()
    assert applied == 1
    assert payments == 1
    assert len(await _inbox(db_url)) == 1
