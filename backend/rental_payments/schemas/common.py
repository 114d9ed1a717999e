"""Envelope returned by every action endpoint."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from rental_payments.core.errors import ActionResult


class ActionResponse(BaseModel):
    success: bool
    error_code: str | None = None
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    retryable: bool = False

    @classmethod
    def from_result(cls, result: ActionResult) -> "ActionResponse":
        return cls(
            success=result.success,
            error_code=result.error_code,
            message=result.message,
            data=result.data,
            warnings=result.warnings,
            retryable=result.retryable,
        )
