"""Test fixtures for the rental payments backend."""
from __future__ import annotations

import itertools
import os
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("APP_ENV", "local")
os.environ.setdefault("STRIPE_CONNECT_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("DEPOSIT_EXPIRY_SWEEP_ENABLED", "false")

from rental_payments.api.deps import get_gateways
from rental_payments.core.config import get_settings
from rental_payments.core.errors import PaymentsError, ProviderRejected
from rental_payments.db.base import Base
from rental_payments.db.session import dispose_engine, get_sessionmaker
from rental_payments.integrations import (
    AccountStatus,
    CheckoutLineItem,
    CheckoutSession,
    PaymentIntent,
    Refund,
)
from rental_payments.main import app
from rental_payments.models import Customer, Reservation, Store
from rental_payments.models.mixins import utcnow
from rental_payments.services import domain_events


class FakeGateway:
    """In-memory stand-in for one provider account."""

    def __init__(self) -> None:
        self.account_id: str | None = None
        self.intents: dict[str, PaymentIntent] = {}
        self.sessions: dict[str, CheckoutSession] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.off_session_status = "requires_capture"
        self._failures: dict[str, list[PaymentsError]] = {}
        self._ids = itertools.count(1)

    def fail_next(self, method: str, exc: PaymentsError) -> None:
        self._failures.setdefault(method, []).append(exc)

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _call(self, method: str, **kwargs: Any) -> None:
        self.calls.append((method, kwargs))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _intent(self, intent_id: str) -> PaymentIntent:
        try:
            return self.intents[intent_id]
        except KeyError:
            raise ProviderRejected(f"No such payment intent {intent_id}") from None

    async def create_sub_account(
        self, *, email: str, country: str, metadata: dict[str, str] | None = None
    ) -> str:
        self._call("create_sub_account", email=email, country=country, metadata=metadata)
        return "acct_created"

    async def create_onboarding_link(self, *, return_url: str, refresh_url: str) -> str:
        self._call("create_onboarding_link", return_url=return_url, refresh_url=refresh_url)
        return f"https://connect.example.test/setup/{self.account_id}"

    async def get_sub_account_status(self) -> AccountStatus:
        self._call("get_sub_account_status")
        return AccountStatus(
            account_id=self.account_id or "",
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
        )

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
        self._call(
            "create_payment_intent",
            amount=amount,
            currency=currency,
            manual_capture=manual_capture,
            customer=customer,
            payment_method=payment_method,
            confirm=confirm,
            off_session=off_session,
            metadata=metadata,
        )
        intent_id = self._next_id("pi")
        status = self.off_session_status if confirm else "requires_payment_method"
        intent = PaymentIntent(
            id=intent_id,
            status=status,
            amount=amount,
            currency=currency,
            amount_capturable=amount if status == "requires_capture" else 0,
            client_secret=f"{intent_id}_secret_fake",
            payment_method=payment_method,
            customer=customer,
            metadata=dict(metadata or {}),
        )
        self.intents[intent_id] = intent
        return intent

    async def confirm_payment_intent(
        self, intent_id: str, *, payment_method_ref: str, off_session: bool
    ) -> PaymentIntent:
        self._call("confirm_payment_intent", intent_id=intent_id)
        intent = self._intent(intent_id)
        intent.status = "requires_capture"
        intent.amount_capturable = intent.amount
        intent.payment_method = payment_method_ref
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        self._call("retrieve_payment_intent", intent_id=intent_id)
        return self._intent(intent_id)

    async def capture_payment_intent(
        self, intent_id: str, *, amount: int | None = None
    ) -> PaymentIntent:
        self._call("capture_payment_intent", intent_id=intent_id, amount=amount)
        intent = self._intent(intent_id)
        if intent.status != "requires_capture":
            raise ProviderRejected(f"Intent {intent_id} is {intent.status}")
        captured = intent.amount_capturable if amount is None else amount
        if captured > intent.amount_capturable:
            raise ProviderRejected("Amount to capture exceeds capturable amount")
        intent.status = "succeeded"
        intent.amount_received = captured
        intent.amount_capturable = 0
        intent.latest_charge = self._next_id("ch")
        return intent

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        self._call("cancel_payment_intent", intent_id=intent_id)
        intent = self._intent(intent_id)
        if intent.status in ("succeeded", "canceled"):
            raise ProviderRejected(f"Intent {intent_id} is {intent.status}")
        intent.status = "canceled"
        intent.amount_capturable = 0
        return intent

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
        self._call(
            "create_checkout_session",
            line_items=line_items,
            currency=currency,
            customer_email=customer_email,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            save_payment_method=save_payment_method,
            application_fee=application_fee,
            locale=locale,
        )
        session_id = self._next_id("cs")
        checkout = CheckoutSession(
            id=session_id,
            url=f"https://checkout.example.test/{session_id}",
            status="open",
            payment_status="unpaid",
            payment_intent=None,
            customer=None,
            amount_total=sum(line.unit_amount * line.quantity for line in line_items),
            currency=currency,
            metadata=dict(metadata),
        )
        self.sessions[session_id] = checkout
        return checkout

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        self._call("retrieve_checkout_session", session_id=session_id)
        return self.sessions[session_id]

    async def create_refund(
        self,
        charge_ref: str,
        *,
        amount: int | None = None,
        reason: str = "requested_by_customer",
        idempotency_seed: str | None = None,
    ) -> Refund:
        self._call(
            "create_refund",
            charge_ref=charge_ref,
            amount=amount,
            reason=reason,
            idempotency_seed=idempotency_seed,
        )
        return Refund(id=self._next_id("re"), status="pending", amount=amount or 0, currency="EUR")

    # Helpers used by tests to simulate what the customer or provider did.

    def add_paid_intent(
        self,
        *,
        amount: int,
        currency: str = "EUR",
        customer: str = "cus_test",
        payment_method: str = "pm_card_visa",
    ) -> PaymentIntent:
        intent_id = self._next_id("pi")
        intent = PaymentIntent(
            id=intent_id,
            status="succeeded",
            amount=amount,
            currency=currency,
            amount_received=amount,
            payment_method=payment_method,
            customer=customer,
            latest_charge=self._next_id("ch"),
        )
        self.intents[intent_id] = intent
        return intent


class FakeGatewayProvider:
    """Hands out the same fake for the platform and every connected account."""

    def __init__(self, gateway: FakeGateway) -> None:
        self.gateway = gateway
        self.accounts: list[str] = []

    def platform(self) -> FakeGateway:
        self.gateway.account_id = None
        return self.gateway

    def for_account(self, account_id: str) -> FakeGateway:
        self.accounts.append(account_id)
        self.gateway.account_id = account_id
        return self.gateway


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[domain_events.DomainEvent] = []

    async def publish(self, event: domain_events.DomainEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> list[str]:
        return [event.name for event in self.events]


@pytest.fixture(scope="session")
def db_url(tmp_path_factory: pytest.TempPathFactory) -> str:
    """Provide a temporary SQLite database URL for the test session."""
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    return f"sqlite+aiosqlite:///{db_path}"


@pytest_asyncio.fixture()
async def reset_database(db_url: str) -> AsyncIterator[None]:
    """Drop and recreate the database schema for an isolated test."""
    os.environ["DATABASE_URL"] = db_url
    get_settings.cache_clear()
    get_settings()

    await dispose_engine(db_url)
    engine = create_async_engine(db_url, future=True)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
        await connection.run_sync(Base.metadata.create_all)
    await engine.dispose()
    yield
    await dispose_engine(db_url)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def gateways(gateway: FakeGateway) -> FakeGatewayProvider:
    return FakeGatewayProvider(gateway)


@pytest.fixture()
def publisher() -> Iterator[RecordingPublisher]:
    recorder = RecordingPublisher()
    previous = domain_events.get_publisher()
    domain_events.set_publisher(recorder)
    yield recorder
    domain_events.set_publisher(previous)


@pytest_asyncio.fixture()
async def store_context(reset_database: None, db_url: str) -> dict[str, Any]:
    """Seed a connected store and one of its customers."""
    sessionmaker = get_sessionmaker(db_url)
    async with sessionmaker() as session:
        store = Store(
            name="Alpine Rentals",
            slug=f"alpine-{uuid.uuid4().hex[:6]}",
            email="owner@alpine.example",
            country="FR",
            currency="EUR",
            settings={"checkout_locale": "fr"},
            stripe_account_id="acct_store",
            charges_enabled=True,
        )
        session.add(store)
        await session.flush()
        customer = Customer(
            store_id=store.id,
            first_name="Jamie",
            last_name="Renter",
            email="jamie@example.com",
        )
        session.add(customer)
        await session.commit()
        return {"store_id": store.id, "customer_id": customer.id}


ReservationFactory = Callable[..., Awaitable[uuid.UUID]]


@pytest.fixture()
def make_reservation(store_context: dict[str, Any], db_url: str) -> ReservationFactory:
    """Create a reservation row and return its id."""
    numbers = itertools.count(1001)

    async def _make(**overrides: Any) -> uuid.UUID:
        start = utcnow() + timedelta(days=2)
        values: dict[str, Any] = {
            "store_id": store_context["store_id"],
            "customer_id": store_context["customer_id"],
            "number": f"R-{next(numbers)}",
            "start_date": start,
            "end_date": start + timedelta(days=3),
            "subtotal_amount": Decimal("200.00"),
            "deposit_amount": Decimal("100.00"),
            "total_amount": Decimal("200.00"),
        }
        values.update(overrides)
        sessionmaker = get_sessionmaker(db_url)
        async with sessionmaker() as session:
            reservation = Reservation(**values)
            session.add(reservation)
            await session.commit()
            return reservation.id

    return _make


@pytest_asyncio.fixture()
async def session(reset_database: None, db_url: str) -> AsyncIterator[Any]:
    sessionmaker = get_sessionmaker(db_url)
    async with sessionmaker() as db_session:
        yield db_session


@pytest_asyncio.fixture()
async def app_context(
    store_context: dict[str, Any],
    gateways: FakeGatewayProvider,
    publisher: RecordingPublisher,
) -> AsyncIterator[dict[str, Any]]:
    """Yield an async client wired to the fake gateway plus the seeded ids."""
    app.dependency_overrides[get_gateways] = lambda: gateways
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield {**store_context, "client": client}
    finally:
        app.dependency_overrides.pop(get_gateways, None)


@pytest.fixture()
def reload(db_url: str) -> Callable[[uuid.UUID], Awaitable[Reservation]]:
    """Fetch a reservation with its store and payments from a fresh session."""
    from rental_payments.services.locks import load_reservation

    async def _reload(reservation_id: uuid.UUID) -> Reservation:
        sessionmaker = get_sessionmaker(db_url)
        async with sessionmaker() as fresh:
            return await load_reservation(fresh, reservation_id)

    return _reload
