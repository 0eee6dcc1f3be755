"""Outcome records returned by the registration and login entry points."""

from __future__ import annotations

from pydantic import BaseModel, Field

from multiauth.models.identity import Account, AuthMethod
from multiauth.models.merge import FieldConflict


class RegistrationResult(BaseModel):
    success: bool
    account: Account | None = None
    created: bool = False
    requires_verification: bool = False
    verification_code_id: str | None = None
    code_delivered: bool = False
    requires_merge: bool = False
    merge_request_id: str | None = None
    conflicts: dict[str, FieldConflict] = Field(default_factory=dict)
    requires_mfa: bool = False
    mfa_methods: list[AuthMethod] = Field(default_factory=list)


class LoginResult(BaseModel):
    success: bool
    account: Account | None = None
    requires_mfa: bool = False
    mfa_methods: list[AuthMethod] = Field(default_factory=list)  # where codes were sent
