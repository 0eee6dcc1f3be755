"""Provider normalizers — turn external identity provider codes into ExternalIdentity."""

from multiauth.providers.base import ExternalIdentity, ProviderNormalizer, pick_primary_email
from multiauth.providers.github import GitHubNormalizer

__all__ = [
    "ExternalIdentity",
    "GitHubNormalizer",
    "ProviderNormalizer",
    "pick_primary_email",
]
