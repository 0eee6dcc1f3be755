"""Error taxonomy for the multi-auth engine.

Every failure that crosses the service boundary is a MultiAuthError carrying a
stable ``kind`` and a human-readable message. Callers map kinds to transport
status codes; no stack detail is exposed through ``to_dict``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_INPUT = "invalid_input"
    RATE_LIMITED = "rate_limited"
    INVALID_VERIFICATION_CODE = "invalid_verification_code"
    INVARIANT_VIOLATION = "invariant_violation"
    PROVIDER_EXCHANGE_FAILED = "provider_exchange_failed"
    ALREADY_RESOLVED = "already_resolved"
    EXPIRED = "expired"
    INVALID_CREDENTIALS = "invalid_credentials"
    CONFIGURATION = "configuration"


class MultiAuthError(Exception):
    """Base exception for all business-logic failures."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT
    default_message = "Request failed"

    def __init__(self, message: str | None = None, details: Any | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind.value, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


# ----- Not found -----


class UserNotFoundError(MultiAuthError):
    kind = ErrorKind.NOT_FOUND
    default_message = "User not found"


class MergeRequestNotFoundError(MultiAuthError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Merge request not found"


class MethodNotBoundError(MultiAuthError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Authentication method is not bound to this account"


# ----- Conflicts -----


class MethodAlreadyBoundError(MultiAuthError):
    kind = ErrorKind.CONFLICT
    default_message = "Authentication method is already bound"


class IdentifierTakenError(MultiAuthError):
    kind = ErrorKind.CONFLICT
    default_message = "Identifier is already used by another account"


class DuplicateIdentifierError(MultiAuthError):
    """Raised by repositories when a (method, identifier) pair already exists."""

    kind = ErrorKind.CONFLICT
    default_message = "Identifier already exists"

    def __init__(self, method: str, identifier: str) -> None:
        super().__init__(f"{method} identifier already exists: {identifier}")
        self.method = method
        self.identifier = identifier


# ----- Input and verification -----


class InvalidInputError(MultiAuthError):
    kind = ErrorKind.INVALID_INPUT
    default_message = "Invalid input"


class RateLimitedError(MultiAuthError):
    kind = ErrorKind.RATE_LIMITED
    default_message = "Too many requests, try again later"

    def __init__(self, message: str | None = None, retry_after: int | None = None) -> None:
        super().__init__(message, {"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after


class InvalidVerificationCodeError(MultiAuthError):
    kind = ErrorKind.INVALID_VERIFICATION_CODE
    default_message = "Invalid verification code"


class InvalidCredentialsError(MultiAuthError):
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid credentials"


# ----- Invariants -----


class LastMethodCannotBeUnboundError(MultiAuthError):
    kind = ErrorKind.INVARIANT_VIOLATION
    default_message = "The last authentication method cannot be unbound"


# ----- Providers -----


class ProviderExchangeFailedError(MultiAuthError):
    kind = ErrorKind.PROVIDER_EXCHANGE_FAILED
    default_message = "Identity provider exchange failed"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}", {"provider": provider})
        self.provider = provider


class ProviderNotConfiguredError(MultiAuthError):
    kind = ErrorKind.CONFIGURATION
    default_message = "Identity provider is not configured"


# ----- Merge state machine -----


class MergeAlreadyResolvedError(MultiAuthError):
    kind = ErrorKind.ALREADY_RESOLVED
    default_message = "Merge request has already been processed"


class MergeExpiredError(MultiAuthError):
    kind = ErrorKind.EXPIRED
    default_message = "Merge request has expired"
