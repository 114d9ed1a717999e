"""Liveness and readiness probes."""

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from rental_payments.api.deps import SessionDep
from rental_payments.core.config import get_settings
from rental_payments.core.settings import get_payment_settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", summary="Service health status")
async def healthcheck(session: SessionDep) -> dict[str, Any]:
    """Report database reachability and whether online payments are configured."""
    settings = get_settings()
    payments = get_payment_settings()
    try:
        await session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.error("Health check database probe failed: %s", type(exc).__name__)
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "service": settings.app_name,
        "environment": settings.app_env,
        "database": database,
        "payments_configured": bool(payments.stripe_secret_key),
        "webhook_verification": payments.payments_webhook_verify,
        "timestamp": datetime.now(UTC).isoformat(),
    }
