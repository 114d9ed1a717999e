"""Schemas for connected-account onboarding."""

from __future__ import annotations

from pydantic import BaseModel, Field


class StoreConnectRequest(BaseModel):
    country: str | None = Field(default=None, min_length=2, max_length=2)


class OnboardingLinkRequest(BaseModel):
    return_url: str | None = None
    refresh_url: str | None = None
