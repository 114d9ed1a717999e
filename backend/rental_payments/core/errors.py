"""Error taxonomy and structured action results for the payments core."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class PaymentsError(Exception):
    """Base class for every expected failure raised by the payments core."""

    code = "payments_error"
    retryable = False

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        super().__init__(message or self.code)
        if code is not None:
            self.code = code


class ValidationError(PaymentsError):
    """Bad input; never retried."""

    code = "validation_error"


class NotFound(PaymentsError):
    code = "not_found"


class InvalidState(PaymentsError):
    """The requested transition is illegal from the current state."""

    code = "invalid_state"


class AmountExceedsAuthorization(ValidationError):
    code = "amount_exceeds_authorization"


class WarningsRequireAcknowledgement(PaymentsError):
    """Pickup/return was attempted with outstanding money warnings."""

    code = "warnings_require_acknowledgement"

    def __init__(self, warnings: list[str]) -> None:
        super().__init__("Transition requires acknowledging: " + ", ".join(warnings))
        self.warnings = warnings


class ProviderError(PaymentsError):
    """Base class for failures surfaced by the payment provider adapter."""

    code = "provider_error"


class ProviderUnavailable(ProviderError):
    """Transient infrastructure failure; the outcome of the call is unknown."""

    code = "provider_unavailable"
    retryable = True


class ProviderRejected(ProviderError):
    """The provider refused the request (decline, invalid provider-side state)."""

    code = "provider_rejected"

    def __init__(self, message: str | None = None, *, decline_code: str | None = None) -> None:
        super().__init__(message)
        self.decline_code = decline_code


class SignatureInvalid(ProviderError):
    """Webhook signature mismatch; rejected and never retried."""

    code = "signature_invalid"


@dataclass(slots=True)
class ActionResult:
    """Structured outcome returned to dashboard/API callers."""

    success: bool
    error_code: str | None = None
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    retryable: bool = False

    @classmethod
    def ok(cls, **data: Any) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error_code: str,
        message: str | None = None,
        *,
        warnings: list[str] | None = None,
        retryable: bool = False,
        **data: Any,
    ) -> "ActionResult":
        return cls(
            success=False,
            error_code=error_code,
            message=message,
            data=data,
            warnings=list(warnings or []),
            retryable=retryable,
        )

    @classmethod
    def from_error(cls, exc: PaymentsError) -> "ActionResult":
        warnings = getattr(exc, "warnings", None)
        data: dict[str, Any] = {}
        decline_code = getattr(exc, "decline_code", None)
        if decline_code:
            data["decline_code"] = decline_code
        if isinstance(exc, ProviderUnavailable):
            return cls.fail(
                exc.code, "Payment provider unavailable, try again later", retryable=True
            )
        return cls.fail(exc.code, str(exc), warnings=warnings, **data)


__all__ = [
    "ActionResult",
    "AmountExceedsAuthorization",
    "InvalidState",
    "NotFound",
    "PaymentsError",
    "ProviderError",
    "ProviderRejected",
    "ProviderUnavailable",
    "SignatureInvalid",
    "ValidationError",
    "WarningsRequireAcknowledgement",
]
