"""Helper utilities for recording reservation activity."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental_payments.models import Reservation, ReservationActivity


def record_activity(
    session: AsyncSession,
    *,
    activity_type: str,
    reservation: Reservation | None = None,
    reservation_id: uuid.UUID | None = None,
    store_id: uuid.UUID | None = None,
    description: str | None = None,
    payload: dict[str, Any] | None = None,
    actor: str | None = None,
) -> ReservationActivity:
    """Stage an activity entry; it is committed with the caller's unit of work."""
    entry = ReservationActivity(
        reservation_id=reservation.id if reservation is not None else reservation_id,
        store_id=reservation.store_id if reservation is not None else store_id,
        activity_type=activity_type,
        description=description,
        payload=payload,
        actor=actor,
    )
    session.add(entry)
    return entry


async def list_activity(
    session: AsyncSession, *, reservation_id: uuid.UUID
) -> list[ReservationActivity]:
    stmt = (
        select(ReservationActivity)
        .where(ReservationActivity.reservation_id == reservation_id)
        .order_by(ReservationActivity.created_at, ReservationActivity.id)
    )
    return list((await session.execute(stmt)).scalars().all())
