"""Background sweep that reconciles expired deposit holds on a fixed interval."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from rental_payments.db.session import background_session
from rental_payments.integrations import GatewayProvider
from rental_payments.services import deposit_service

logger = logging.getLogger(__name__)


class DepositExpiryWorker:
    """Runs :func:`deposit_service.reconcile_expiry` until stopped."""

    def __init__(
        self,
        *,
        gateways: GatewayProvider,
        interval_seconds: float,
        database_url: str | None = None,
    ) -> None:
        self._gateways = gateways
        self._interval_seconds = interval_seconds
        self._database_url = database_url
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> deposit_service.ExpirySweepReport:
        async with background_session(self._database_url) as session:
            return await deposit_service.reconcile_expiry(session, gateways=self._gateways)

    async def _loop(self) -> None:
        logger.info("Deposit expiry sweep started (every %ss)", self._interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception:  # keep sweeping; one bad run must not stop the worker
                logger.exception("Deposit expiry sweep failed")
            await asyncio.sleep(self._interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="deposit-expiry-sweep")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Deposit expiry sweep stopped")


__all__ = ["DepositExpiryWorker"]
