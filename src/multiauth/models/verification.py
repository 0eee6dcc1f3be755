"""Verification codes: short-lived proof-of-possession records."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from multiauth.models.identity import AuthMethod


class CodePurpose(StrEnum):
    REGISTRATION = "registration"
    LOGIN = "login"
    BINDING = "binding"
    UNBINDING = "unbinding"
    TWO_FACTOR = "two_factor"


class VerificationCode(BaseModel):
    """A numeric code issued for one (identifier, method, purpose).
    Consumed at most once; expires on its own otherwise."""

    id: str
    code: str
    identifier: str
    auth_method: AuthMethod
    purpose: CodePurpose
    contact: str | None = None  # delivery destination when it differs from identifier
    metadata: dict = Field(default_factory=dict)
    is_used: bool = False
    expires_at: datetime
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now
