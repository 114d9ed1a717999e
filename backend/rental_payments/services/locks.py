"""Per-reservation serialization for money state changes."""

from __future__ import annotations

import asyncio
import uuid
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental_payments.core.errors import NotFound
from rental_payments.models import Reservation, Store
from rental_payments.services.domain_events import discard_pending

_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = (
    weakref.WeakValueDictionary()
)


def _lock_for(reservation_id: uuid.UUID) -> asyncio.Lock:
    lock = _locks.get(reservation_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[reservation_id] = lock
    return lock


def reservation_query(reservation_id: uuid.UUID):
    return (
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .options(
            selectinload(Reservation.store),
            selectinload(Reservation.customer),
            selectinload(Reservation.payments),
        )
        .execution_options(populate_existing=True)
    )


async def load_reservation(
    session: AsyncSession, reservation_id: uuid.UUID, *, for_update: bool = False
) -> Reservation:
    stmt = reservation_query(reservation_id)
    if for_update:
        stmt = stmt.with_for_update(of=Reservation)
    reservation = (await session.execute(stmt)).scalars().unique().one_or_none()
    if reservation is None:
        raise NotFound("Reservation not found")
    return reservation


@asynccontextmanager
async def reservation_guard(
    session: AsyncSession, reservation_id: uuid.UUID
) -> AsyncIterator[Reservation]:
    """Hold the reservation's lock and yield its row locked for update.

    The in-process lock orders coroutines of this worker; the row lock orders
    workers sharing the database. Callers commit or roll back before leaving
    the block so the row lock is released with the in-process one.
    """

    lock = _lock_for(reservation_id)
    async with lock:
        reservation = await load_reservation(session, reservation_id, for_update=True)
        try:
            yield reservation
        finally:
            if session.in_transaction():
                discard_pending(session)
                await session.rollback()


async def load_store(session: AsyncSession, store_id: uuid.UUID) -> Store:
    store = await session.get(Store, store_id)
    if store is None:
        raise NotFound("Store not found")
    return store


__all__ = ["load_reservation", "load_store", "reservation_guard", "reservation_query"]
