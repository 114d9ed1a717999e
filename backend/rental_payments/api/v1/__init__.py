"""Version 1 API routers."""

from fastapi import APIRouter

from . import deposits, health, payments, payments_webhook, reservations, stores

router = APIRouter()
router.include_router(health.router, prefix="/health", tags=["health"])
router.include_router(stores.router, prefix="/stores", tags=["stores"])
router.include_router(reservations.router, prefix="/reservations", tags=["reservations"])
router.include_router(deposits.router, prefix="/reservations", tags=["deposits"])
router.include_router(payments.router, tags=["payments"])
router.include_router(payments_webhook.router)

__all__ = ["router"]
