"""Pure state reducer for the security-deposit hold.

The reducer never raises for out-of-order or repeated input: webhook
delivery is at-least-once and unordered, so an event that does not fit the
current state is reported back as not applied, with a reason the caller
records in the activity log.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from rental_payments.models.deposit import DepositEventKind, DepositStatus

# Provider-enforced lifetime of an uncaptured card authorization.
AUTHORIZATION_HOLD_PERIOD = timedelta(days=7)

_TARGETS: dict[DepositEventKind, DepositStatus] = {
    DepositEventKind.REQUESTED: DepositStatus.PENDING,
    DepositEventKind.CARD_SAVED: DepositStatus.CARD_SAVED,
    DepositEventKind.AUTHORIZED: DepositStatus.AUTHORIZED,
    DepositEventKind.CAPTURED: DepositStatus.CAPTURED,
    DepositEventKind.RELEASED: DepositStatus.RELEASED,
    DepositEventKind.FAILED: DepositStatus.FAILED,
}

LEGAL_TRANSITIONS: frozenset[tuple[DepositStatus, DepositStatus]] = frozenset(
    {
        (DepositStatus.NONE, DepositStatus.PENDING),
        (DepositStatus.PENDING, DepositStatus.CARD_SAVED),
        (DepositStatus.PENDING, DepositStatus.AUTHORIZED),
        (DepositStatus.CARD_SAVED, DepositStatus.AUTHORIZED),
        (DepositStatus.CARD_SAVED, DepositStatus.RELEASED),
        (DepositStatus.AUTHORIZED, DepositStatus.CAPTURED),
        (DepositStatus.AUTHORIZED, DepositStatus.RELEASED),
        (DepositStatus.AUTHORIZED, DepositStatus.FAILED),
    }
)

TERMINAL_DEPOSIT_STATUSES = frozenset(
    {DepositStatus.CAPTURED, DepositStatus.RELEASED, DepositStatus.FAILED}
)


@dataclass(frozen=True, slots=True)
class DepositSignal:
    """One input to the reducer; ``event_id`` is its idempotency key."""

    event_id: str
    kind: DepositEventKind
    occurred_at: datetime


@dataclass(frozen=True, slots=True)
class DepositProjection:
    status: DepositStatus = DepositStatus.NONE
    deposit_required: bool = True
    authorization_expires_at: datetime | None = None
    applied_event_ids: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class ReducerOutcome:
    projection: DepositProjection
    from_status: DepositStatus
    applied: bool
    reason: str | None = None

    @property
    def to_status(self) -> DepositStatus:
        return self.projection.status


def target_status(kind: DepositEventKind) -> DepositStatus:
    return _TARGETS[kind]


def is_legal(current: DepositStatus, target: DepositStatus) -> bool:
    return (current, target) in LEGAL_TRANSITIONS


def reduce(projection: DepositProjection, signal: DepositSignal) -> ReducerOutcome:
    current = projection.status
    if signal.event_id in projection.applied_event_ids:
        return ReducerOutcome(projection, current, False, "duplicate_event")
    if not projection.deposit_required:
        return ReducerOutcome(projection, current, False, "no_deposit_required")

    target = _TARGETS[signal.kind]
    if not is_legal(current, target):
        return ReducerOutcome(
            projection,
            current,
            False,
            f"illegal_transition:{current.value}->{target.value}",
        )

    expires_at = projection.authorization_expires_at
    if target is DepositStatus.AUTHORIZED:
        expires_at = signal.occurred_at + AUTHORIZATION_HOLD_PERIOD
    updated = replace(
        projection,
        status=target,
        authorization_expires_at=expires_at,
        applied_event_ids=projection.applied_event_ids | {signal.event_id},
    )
    return ReducerOutcome(updated, current, True)


def replay(
    signals: Iterable[DepositSignal], *, deposit_required: bool = True
) -> DepositProjection:
    """Fold a sequence of signals from the initial projection."""
    projection = DepositProjection(deposit_required=deposit_required)
    for signal in signals:
        projection = reduce(projection, signal).projection
    return projection


__all__ = [
    "AUTHORIZATION_HOLD_PERIOD",
    "DepositProjection",
    "DepositSignal",
    "LEGAL_TRANSITIONS",
    "ReducerOutcome",
    "TERMINAL_DEPOSIT_STATUSES",
    "is_legal",
    "reduce",
    "replay",
    "target_status",
]
