"""Domain events emitted after money and lifecycle transitions commit."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.models import Reservation
from rental_payments.models.mixins import utcnow

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_domain_events"


@dataclass(frozen=True, slots=True)
class DomainEvent:
    name: str
    reservation_id: uuid.UUID
    store_id: uuid.UUID
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class DomainEventPublisher(Protocol):
    async def publish(self, event: DomainEvent) -> None: ...


class LoggingPublisher:
    """Default publisher; a notifier integration replaces it at startup."""

    async def publish(self, event: DomainEvent) -> None:
        logger.info(
            "Domain event %s for reservation %s", event.name, event.reservation_id
        )


_publisher: DomainEventPublisher = LoggingPublisher()


def set_publisher(publisher: DomainEventPublisher) -> None:
    global _publisher
    _publisher = publisher


def get_publisher() -> DomainEventPublisher:
    return _publisher


def enqueue(
    session: AsyncSession, name: str, reservation: Reservation, **payload: Any
) -> None:
    """Queue an event on the session; nothing is sent until commit succeeds."""
    pending = session.info.setdefault(_PENDING_KEY, [])
    pending.append(
        DomainEvent(
            name=name,
            reservation_id=reservation.id,
            store_id=reservation.store_id,
            payload=payload,
        )
    )


def discard_pending(session: AsyncSession) -> None:
    session.info.pop(_PENDING_KEY, None)


async def commit_and_publish(session: AsyncSession) -> None:
    """Commit the unit of work, then hand queued events to the publisher once."""
    try:
        await session.commit()
    except Exception:
        discard_pending(session)
        raise
    events: list[DomainEvent] = session.info.pop(_PENDING_KEY, [])
    publisher = get_publisher()
    for event in events:
        try:
            await publisher.publish(event)
        except Exception:  # notifier failures never undo a committed transition
            logger.exception("Failed to publish domain event %s", event.name)
