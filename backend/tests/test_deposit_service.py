"""Service tests for deposit holds, captures, releases and the expiry sweep."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from rental_payments.core.errors import ProviderRejected, ProviderUnavailable
from rental_payments.models import (
    DepositStatus,
    PaymentMethod,
    PaymentType,
    ReservationStatus,
)
from rental_payments.models.mixins import coerce_utc, utcnow
from rental_payments.services import audit_service, deposit_service, ledger_service
from rental_payments.services.deposit_service import AuthorizationMode
from rental_payments.services.locks import reservation_guard

pytestmark = pytest.mark.asyncio

SAVED_CARD = {"saved_payment_method_ref": "pm_saved", "provider_customer_ref": "cus_saved"}


async def _authorized(session, gateways, make_reservation, **overrides):
    reservation_id = await make_reservation(
        status=ReservationStatus.CONFIRMED, **SAVED_CARD, **overrides
    )
    result = await deposit_service.request_authorization(
        session,
        reservation_id=reservation_id,
        gateways=gateways,
        mode=AuthorizationMode.OFF_SESSION,
    )
    assert result.success, result
    return reservation_id, result.data["intent_id"]


async def test_off_session_authorization_holds_the_deposit(
    session, gateway, gateways, make_reservation, reload, publisher
) -> None:
    before = utcnow()
    reservation_id, intent_id = await _authorized(session, gateways, make_reservation)

    create = gateway.calls_to("create_payment_intent")[0]
    assert create["amount"] == 10000
    assert create["confirm"] is True
    assert create["off_session"] is True
    assert create["payment_method"] == "pm_saved"
    assert create["metadata"]["type"] == "deposit_hold"
    assert gateways.accounts[-1] == "acct_store"

    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.AUTHORIZED
    assert reservation.deposit_intent_ref == intent_id
    assert reservation.deposit_authorized_amount == Decimal("100.00")
    expires_at = coerce_utc(reservation.deposit_authorization_expires_at)
    assert before + timedelta(days=7) <= expires_at <= utcnow() + timedelta(days=7)
    assert publisher.names == ["deposit.authorization_requested", "deposit.authorized"]


async def test_interactive_authorization_returns_client_secret(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id = await make_reservation()
    result = await deposit_service.request_authorization(
        session, reservation_id=reservation_id, gateways=gateways
    )
    assert result.success
    assert result.data["client_secret"].endswith("_secret_fake")
    assert result.data["deposit_status"] == "pending"
    assert result.data["account_id"] == "acct_store"
    assert gateway.calls_to("create_payment_intent")[0]["metadata"]["type"] == (
        "deposit_authorization_request"
    )
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.PENDING


async def test_rerequest_cancels_the_replaced_intent(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id = await make_reservation()
    first = await deposit_service.request_authorization(
        session, reservation_id=reservation_id, gateways=gateways
    )
    second = await deposit_service.request_authorization(
        session, reservation_id=reservation_id, gateways=gateways
    )

    assert second.success
    assert second.data["intent_id"] != first.data["intent_id"]
    assert gateway.calls_to("cancel_payment_intent") == [
        {"intent_id": first.data["intent_id"]}
    ]
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.PENDING
    assert reservation.deposit_intent_ref == second.data["intent_id"]
    activity = await audit_service.list_activity(session, reservation_id=reservation_id)
    rerequested = [a for a in activity if a.activity_type == "deposit.authorization_rerequested"]
    assert rerequested[0].payload["replaced_intent_id"] == first.data["intent_id"]


async def test_off_session_hold_cancels_unconfirmed_interactive_intent(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id = await make_reservation(**SAVED_CARD)
    interactive = await deposit_service.request_authorization(
        session, reservation_id=reservation_id, gateways=gateways
    )

    held = await deposit_service.request_authorization(
        session,
        reservation_id=reservation_id,
        gateways=gateways,
        mode=AuthorizationMode.OFF_SESSION,
    )

    assert held.success
    assert gateway.intents[interactive.data["intent_id"]].status == "canceled"
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.AUTHORIZED
    assert reservation.deposit_intent_ref == held.data["intent_id"]


async def test_capture_webhook_ahead_of_authorization_records_payment_once(
    session, gateways, make_reservation, reload, publisher
) -> None:
    reservation_id = await make_reservation()
    requested = await deposit_service.request_authorization(
        session, reservation_id=reservation_id, gateways=gateways
    )
    intent_id = requested.data["intent_id"]

    async with reservation_guard(session, reservation_id) as reservation:
        outcome = await deposit_service.on_intent_succeeded(
            session, reservation, intent_id=intent_id, amount_received=6000
        )
        await session.commit()
    assert outcome.applied

    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.CAPTURED
    deposits = [p for p in reservation.payments if p.type is PaymentType.DEPOSIT]
    assert [(p.amount, p.external_reference) for p in deposits] == [
        (Decimal("60.00"), intent_id)
    ]

    async with reservation_guard(session, reservation_id) as reservation:
        again = await deposit_service.on_intent_succeeded(
            session, reservation, intent_id="pi_other", amount_received=6000
        )
        await session.commit()
    assert not again.applied
    reservation = await reload(reservation_id)
    assert len([p for p in reservation.payments if p.type is PaymentType.DEPOSIT]) == 1


async def test_off_session_decline_leaves_state_unchanged(
    session, gateway, gateways, make_reservation, reload, publisher
) -> None:
    reservation_id = await make_reservation(**SAVED_CARD)
    gateway.fail_next(
        "create_payment_intent",
        ProviderRejected("Your card was declined.", decline_code="insufficient_funds"),
    )

    result = await deposit_service.request_authorization(
        session,
        reservation_id=reservation_id,
        gateways=gateways,
        mode=AuthorizationMode.OFF_SESSION,
    )

    assert not result.success
    assert result.error_code == "provider_rejected"
    assert result.data["decline_code"] == "insufficient_funds"
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.NONE
    assert publisher.events == []
    activity = await audit_service.list_activity(session, reservation_id=reservation_id)
    assert [entry.activity_type for entry in activity] == ["deposit.authorization_declined"]
    assert len(gateway.calls_to("create_payment_intent")) == 1


async def test_off_session_needing_customer_action_is_cancelled(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id = await make_reservation(**SAVED_CARD)
    gateway.off_session_status = "requires_action"

    result = await deposit_service.request_authorization(
        session,
        reservation_id=reservation_id,
        gateways=gateways,
        mode=AuthorizationMode.OFF_SESSION,
    )

    assert result.error_code == "provider_rejected"
    assert result.data["decline_code"] == "requires_action"
    assert len(gateway.calls_to("cancel_payment_intent")) == 1
    assert (await reload(reservation_id)).deposit_status is DepositStatus.NONE


async def test_off_session_requires_saved_card(session, gateways, make_reservation) -> None:
    reservation_id = await make_reservation()
    result = await deposit_service.request_authorization(
        session,
        reservation_id=reservation_id,
        gateways=gateways,
        mode=AuthorizationMode.OFF_SESSION,
    )
    assert result.error_code == "no_saved_payment_method"


async def test_authorization_rejects_other_currency_and_missing_deposit(
    session, gateways, make_reservation
) -> None:
    reservation_id = await make_reservation()
    mismatch = await deposit_service.request_authorization(
        session, reservation_id=reservation_id, gateways=gateways, currency="usd"
    )
    assert mismatch.error_code == "currency_mismatch"

    no_deposit = await make_reservation(deposit_amount=Decimal("0"))
    result = await deposit_service.request_authorization(
        session, reservation_id=no_deposit, gateways=gateways
    )
    assert result.error_code == "no_deposit_required"


async def test_partial_capture_records_one_deposit_payment(
    session, gateway, gateways, make_reservation, reload, publisher
) -> None:
    reservation_id, intent_id = await _authorized(session, gateways, make_reservation)

    result = await deposit_service.capture(
        session, reservation_id=reservation_id, gateways=gateways, amount=Decimal("60.00")
    )

    assert result.success, result
    assert result.data["amount"] == "60.00"
    assert gateway.calls_to("capture_payment_intent") == [{"intent_id": intent_id, "amount": 6000}]
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.CAPTURED
    deposits = [p for p in reservation.payments if p.type is PaymentType.DEPOSIT]
    assert len(deposits) == 1
    assert deposits[0].amount == Decimal("60.00")
    assert deposits[0].method is PaymentMethod.GATEWAY
    assert deposits[0].external_reference == intent_id
    assert publisher.names[-1] == "deposit.captured"

    again = await deposit_service.capture(
        session, reservation_id=reservation_id, gateways=gateways
    )
    assert again.error_code == "invalid_state"
    reservation = await reload(reservation_id)
    assert len([p for p in reservation.payments if p.type is PaymentType.DEPOSIT]) == 1


async def test_capture_above_authorization_is_refused(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id, _ = await _authorized(session, gateways, make_reservation)

    result = await deposit_service.capture(
        session, reservation_id=reservation_id, gateways=gateways, amount=Decimal("150.00")
    )

    assert result.error_code == "amount_exceeds_authorization"
    assert gateway.calls_to("capture_payment_intent") == []
    assert (await reload(reservation_id)).deposit_status is DepositStatus.AUTHORIZED


async def test_capture_outage_keeps_the_hold_and_is_retryable(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id, _ = await _authorized(session, gateways, make_reservation)
    gateway.fail_next("capture_payment_intent", ProviderUnavailable("timeout"))

    result = await deposit_service.capture(
        session, reservation_id=reservation_id, gateways=gateways
    )

    assert result.error_code == "provider_unavailable"
    assert result.retryable
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.AUTHORIZED
    assert reservation.payments == []
    assert len(gateway.calls_to("retrieve_payment_intent")) == 1


async def test_capture_after_provider_dropped_hold_marks_released(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id, intent_id = await _authorized(session, gateways, make_reservation)
    gateway.intents[intent_id].status = "canceled"

    result = await deposit_service.capture(
        session, reservation_id=reservation_id, gateways=gateways
    )

    assert result.error_code == "authorization_no_longer_held"
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.RELEASED
    assert reservation.payments == []


async def test_release_is_terminal(
    session, gateway, gateways, make_reservation, reload, publisher
) -> None:
    reservation_id, intent_id = await _authorized(session, gateways, make_reservation)

    result = await deposit_service.release(
        session, reservation_id=reservation_id, gateways=gateways, reason="returned_ok"
    )

    assert result.success
    assert result.data["deposit_status"] == "released"
    assert gateway.intents[intent_id].status == "canceled"
    assert publisher.names[-1] == "deposit.released"

    capture = await deposit_service.capture(
        session, reservation_id=reservation_id, gateways=gateways
    )
    assert capture.error_code == "invalid_state"
    again = await deposit_service.request_authorization(
        session, reservation_id=reservation_id, gateways=gateways
    )
    assert again.error_code == "deposit_closed"
    assert (await reload(reservation_id)).deposit_status is DepositStatus.RELEASED


async def test_deposit_return_does_not_touch_deposit_status(
    session, gateways, make_reservation, reload
) -> None:
    reservation_id, _ = await _authorized(session, gateways, make_reservation)
    captured = await deposit_service.capture(
        session, reservation_id=reservation_id, gateways=gateways
    )
    assert captured.success

    returned = await ledger_service.return_deposit(
        session,
        reservation_id=reservation_id,
        amount=Decimal("40.00"),
        method=PaymentMethod.TRANSFER,
    )

    assert returned.success
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.CAPTURED
    summary = ledger_service.summarize(reservation)
    assert summary.deposit_collected == Decimal("100.00")
    assert summary.deposit_returned == Decimal("40.00")
    assert summary.deposit_to_return == Decimal("60.00")

    too_much = await ledger_service.return_deposit(
        session,
        reservation_id=reservation_id,
        amount=Decimal("60.01"),
        method=PaymentMethod.TRANSFER,
    )
    assert too_much.error_code == "amount_exceeds_deposit"


async def test_expiry_sweep_releases_dropped_hold_without_touching_lifecycle(
    session, gateway, gateways, make_reservation, reload, publisher
) -> None:
    reservation_id, intent_id = await _authorized(session, gateways, make_reservation)
    gateway.intents[intent_id].status = "canceled"

    early = await deposit_service.reconcile_expiry(
        session, gateways=gateways, now=utcnow() + timedelta(days=6)
    )
    assert early.checked == 0

    report = await deposit_service.reconcile_expiry(
        session, gateways=gateways, now=utcnow() + timedelta(days=8)
    )

    assert report.checked == 1
    assert report.released == 1
    reservation = await reload(reservation_id)
    assert reservation.deposit_status is DepositStatus.RELEASED
    assert reservation.status is ReservationStatus.CONFIRMED
    assert publisher.names[-1] == "deposit.released"


async def test_expiry_sweep_leaves_capturable_hold_and_defers_on_outage(
    session, gateway, gateways, make_reservation, reload
) -> None:
    reservation_id, _ = await _authorized(session, gateways, make_reservation)
    later = utcnow() + timedelta(days=8)

    report = await deposit_service.reconcile_expiry(session, gateways=gateways, now=later)
    assert report.still_held == 1

    gateway.fail_next("retrieve_payment_intent", ProviderUnavailable("timeout"))
    deferred = await deposit_service.reconcile_expiry(session, gateways=gateways, now=later)
    assert deferred.retry_later == 1
    assert (await reload(reservation_id)).deposit_status is DepositStatus.AUTHORIZED
