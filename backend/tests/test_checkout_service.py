"""Service tests for hosted checkout and its completion webhook."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import update

from rental_payments.core.config import get_settings
from rental_payments.models import (
    DepositStatus,
    PaymentMethod,
    PaymentType,
    ReservationStatus,
    Store,
)
from rental_payments.services import checkout_service, ledger_service, webhook_service
from rental_payments.services.checkout_service import CheckoutItem

pytestmark = pytest.mark.asyncio


def _completed_event(reservation_id, *, session_id: str, intent_id: str, amount: int) -> dict:
    return {
        "id": f"evt_{uuid.uuid4().hex[:12]}",
        "type": "checkout.session.completed",
        "account": "acct_store",
        "created": 1767225600,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": "paid",
                "payment_intent": intent_id,
                "customer": "cus_test",
                "amount_total": amount,
                "currency": "eur",
                "metadata": {
                    "reservation_id": str(reservation_id),
                    "type": "rental",
                    "deposit_amount": "10000",
                },
            }
        },
    }


async def test_rental_checkout_opens_session_without_ledger_rows(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id = await make_reservation()

    result = await checkout_service.create_rental_checkout(
        session, reservation_id=reservation_id, gateways=gateways
    )

    assert result.success, result
    assert result.data["url"].startswith("https://checkout.example.test/")
    call = gateway.calls_to("create_checkout_session")[0]
    assert call["currency"] == "EUR"
    assert call["locale"] == "fr"
    assert call["save_payment_method"] is True
    assert call["application_fee"] is None
    assert call["customer_email"] == "jamie@example.com"
    assert call["metadata"]["reservation_id"] == str(reservation_id)
    assert call["metadata"]["deposit_amount"] == "10000"
    assert [(line.unit_amount, line.quantity) for line in call["line_items"]] == [(20000, 1)]
    assert f"reservation={reservation_id}" in call["success_url"]
    assert (await reload(reservation_id)).payments == []


async def test_checkout_line_items_are_validated(session, gateways, make_reservation) -> None:
    reservation_id = await make_reservation()
    result = await checkout_service.create_rental_checkout(
        session,
        reservation_id=reservation_id,
        gateways=gateways,
        line_items=[CheckoutItem(name="Kayak", unit_amount=Decimal("25.00"), quantity=0)],
    )
    assert result.error_code == "invalid_quantity"


async def test_checkout_applies_platform_fee(
    session, gateway, gateways, make_reservation, monkeypatch
) -> None:
    reservation_id = await make_reservation()
    monkeypatch.setenv("PLATFORM_FEE_PERCENT", "5")
    get_settings.cache_clear()
    try:
        result = await checkout_service.create_rental_checkout(
            session, reservation_id=reservation_id, gateways=gateways
        )
    finally:
        monkeypatch.delenv("PLATFORM_FEE_PERCENT")
        get_settings.cache_clear()
    assert result.success
    assert gateway.calls_to("create_checkout_session")[0]["application_fee"] == 1000


async def test_store_without_account_cannot_take_online_payment(
    session, gateways, make_reservation, store_context
) -> None:
    reservation_id = await make_reservation()
    await session.execute(
        update(Store)
        .where(Store.id == store_context["store_id"])
        .values(stripe_account_id=None)
    )
    await session.commit()

    result = await checkout_service.create_rental_checkout(
        session, reservation_id=reservation_id, gateways=gateways
    )
    assert result.error_code == "stripe_not_configured"


async def test_payment_request_defaults_to_outstanding_balance(
    session, gateway, gateways, make_reservation
) -> None:
    reservation_id = await make_reservation()
    recorded = await ledger_service.record_payment(
        session,
        reservation_id=reservation_id,
        payment_type=PaymentType.RENTAL,
        amount=Decimal("150.00"),
        method=PaymentMethod.CASH,
    )
    assert recorded.success

    result = await checkout_service.create_payment_request(
        session, reservation_id=reservation_id, gateways=gateways
    )

    assert result.success
    call = gateway.calls_to("create_checkout_session")[0]
    assert call["line_items"][0].unit_amount == 5000
    assert call["save_payment_method"] is False
    assert call["metadata"]["type"] == "payment_request"


async def test_payment_request_when_fully_paid(session, gateways, make_reservation) -> None:
    reservation_id = await make_reservation()
    await ledger_service.record_payment(
        session,
        reservation_id=reservation_id,
        payment_type=PaymentType.RENTAL,
        amount=Decimal("200.00"),
        method=PaymentMethod.CARD,
    )
    result = await checkout_service.create_payment_request(
        session, reservation_id=reservation_id, gateways=gateways
    )
    assert result.error_code == "nothing_to_pay"


async def test_completed_checkout_records_payment_and_saves_card(
    session, gateway, gateways, make_reservation, reload, publisher
) -> None:
    reservation_id = await make_reservation()
    intent = gateway.add_paid_intent(amount=20000)
    event = _completed_event(
        reservation_id, session_id="cs_paid", intent_id=intent.id, amount=20000
    )

    outcome = await webhook_service.process_event(session, event, gateways=gateways)

    assert outcome.status == "processed"
    reservation = await reload(reservation_id)
    assert reservation.status is ReservationStatus.CONFIRMED
    assert reservation.deposit_status is DepositStatus.CARD_SAVED
    assert reservation.saved_payment_method_ref == "pm_card_visa"
    assert reservation.provider_customer_ref == "cus_test"
    rentals = [p for p in reservation.payments if p.type is PaymentType.RENTAL]
    assert len(rentals) == 1
    assert rentals[0].amount == Decimal("200.00")
    assert rentals[0].external_reference == "cs_paid"
    assert "rental.paid" in publisher.names
    assert "reservation.confirmed" in publisher.names
    assert "deposit.authorization_requested" in publisher.names

    # Same session reported again under a new event id.
    redelivered = _completed_event(
        reservation_id, session_id="cs_paid", intent_id=intent.id, amount=20000
    )
    await webhook_service.process_event(session, redelivered, gateways=gateways)
    reservation = await reload(reservation_id)
    assert len([p for p in reservation.payments if p.type is PaymentType.RENTAL]) == 1


async def test_completed_checkout_for_reservation_without_deposit(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id = await make_reservation(deposit_amount=Decimal("0"))
    intent = gateway.add_paid_intent(amount=20000)

    await webhook_service.process_event(
        session,
        _completed_event(reservation_id, session_id="cs_nodep", intent_id=intent.id, amount=20000),
        gateways=gateways,
    )

    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.NONE
    assert reservation.status is ReservationStatus.CONFIRMED
