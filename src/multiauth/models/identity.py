"""Foundation types: auth methods, identity bindings, accounts, and MFA settings."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class AuthMethod(StrEnum):
    EMAIL = "EMAIL"
    PHONE_WHATSAPP = "PHONE_WHATSAPP"
    PHONE_TELEGRAM = "PHONE_TELEGRAM"
    GITHUB = "GITHUB"
    GOSUSLUGI = "GOSUSLUGI"
    VKONTAKTE = "VKONTAKTE"


class IdentityBinding(BaseModel):
    """One proven way of signing in to an Account.
    An Account holds at most one binding per method."""

    method: AuthMethod
    identifier: str
    verified: bool = False
    bound_at: datetime


class MfaSettings(BaseModel):
    """Second-factor configuration. Replaced wholesale, never patched."""

    enabled: bool = False
    methods: list[AuthMethod] = Field(default_factory=list)
    backup_codes: list[str] = Field(default_factory=list)
    backup_codes_used: list[str] = Field(default_factory=list)
    required_methods: int = 0


class Account(BaseModel):
    """Canonical identity. Every bound method resolves here."""

    id: str
    primary_auth_method: AuthMethod
    identities: list[IdentityBinding] = Field(default_factory=list)
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None
    password_hash: str | None = None
    mfa_settings: MfaSettings | None = None
    oauth_metadata: dict[str, dict] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def available_auth_methods(self) -> list[AuthMethod]:
        return [binding.method for binding in self.identities]

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa_settings and self.mfa_settings.enabled)

    def binding(self, method: AuthMethod) -> IdentityBinding | None:
        for binding in self.identities:
            if binding.method == method:
                return binding
        return None

    def identifier_for(self, method: AuthMethod) -> str | None:
        binding = self.binding(method)
        return binding.identifier if binding else None

    def is_verified(self, method: AuthMethod) -> bool:
        binding = self.binding(method)
        return bool(binding and binding.verified)

    @property
    def email(self) -> str | None:
        return self.identifier_for(AuthMethod.EMAIL)

    @property
    def phone(self) -> str | None:
        return self.identifier_for(AuthMethod.PHONE_WHATSAPP) or self.identifier_for(
            AuthMethod.PHONE_TELEGRAM
        )
