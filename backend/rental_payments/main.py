"""FastAPI application entrypoint."""

import logging
from contextlib import asynccontextmanager

from asgi_correlation_id import CorrelationIdMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from secure import Secure

from rental_payments.api import api_router
from rental_payments.api.deps import get_gateways, status_for
from rental_payments.core.config import get_settings
from rental_payments.core.errors import ActionResult, PaymentsError
from rental_payments.schemas.common import ActionResponse
from rental_payments.security.logging_filters import install_sensitive_filter
from rental_payments.services.expiry_worker import DepositExpiryWorker

logger = logging.getLogger(__name__)

settings = get_settings()

_ALLOWED_ORIGINS = [origin for origin in settings.cors_allow_origins if origin]
if not _ALLOWED_ORIGINS:
    _ALLOWED_ORIGINS = ["http://localhost:3000"]


@asynccontextmanager
async def lifespan(_: FastAPI):
    worker: DepositExpiryWorker | None = None
    if settings.deposit_expiry_sweep_enabled:
        worker = DepositExpiryWorker(
            gateways=get_gateways(),
            interval_seconds=settings.deposit_expiry_sweep_interval_seconds,
        )
        worker.start()
    try:
        yield
    finally:
        if worker is not None:
            await worker.stop()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_ALLOWED_ORIGINS,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-Actor", "Stripe-Signature"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(CorrelationIdMiddleware, header_name="X-Request-ID")

_secure_headers = Secure.with_default_headers()


@app.middleware("http")
async def _apply_security_headers(request, call_next):
    response = await call_next(request)
    _secure_headers.set_headers(response)
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        response.headers.setdefault("X-Request-ID", str(correlation_id))
    return response


@app.exception_handler(PaymentsError)
async def _payments_error_handler(_: Request, exc: PaymentsError) -> JSONResponse:
    result = ActionResult.from_error(exc)
    return JSONResponse(
        status_code=status_for(result),
        content={"detail": ActionResponse.from_result(result).model_dump()},
    )


install_sensitive_filter("uvicorn", "uvicorn.access", "uvicorn.error", "")

app.include_router(api_router)


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Return a simple welcome message."""
    return {"message": "Rental Payments API"}
