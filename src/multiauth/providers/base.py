"""Pluggable provider normalizer interface.

Each external identity provider (GitHub, VKontakte, Gosuslugi, ...) turns an
authorization code into the same canonical ExternalIdentity. Provider network
errors surface as ProviderExchangeFailedError and are never retried here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from multiauth.models.identity import AuthMethod


class ExternalIdentity(BaseModel):
    """Provider profile, normalized. Never carries access tokens."""

    provider_name: str
    provider_id: str
    primary_email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    raw_metadata: dict = Field(default_factory=dict)

    @property
    def first_name(self) -> str | None:
        if self.display_name and self.display_name.strip():
            return self.display_name.split()[0]
        return self.raw_metadata.get("username")

    @property
    def last_name(self) -> str | None:
        if not self.display_name:
            return None
        rest = " ".join(self.display_name.split()[1:])
        return rest or None

    def profile(self) -> dict:
        """Account fields this identity would fill in."""
        fields = {
            "email": self.primary_email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar_url": self.avatar_url,
        }
        return {k: v for k, v in fields.items() if v}


def pick_primary_email(emails: list[dict]) -> str | None:
    """Choose the canonical address from a provider's email list.

    The entry flagged ``primary`` wins. Without one, the first ``verified``
    entry in provider order is taken. Unverified addresses are never chosen.
    """
    for entry in emails:
        if entry.get("primary") and entry.get("email"):
            return entry["email"]
    for entry in emails:
        if entry.get("verified") and entry.get("email"):
            return entry["email"]
    return None


class ProviderNormalizer(ABC):
    """Abstract interface for exchanging a provider code for an identity."""

    provider_name: str
    auth_method: AuthMethod

    @abstractmethod
    async def normalize(self, code: str) -> ExternalIdentity:
        """Exchange ``code`` with the provider and return the canonical identity.

        Raises ProviderExchangeFailedError on any upstream failure, including
        timeouts.
        """
