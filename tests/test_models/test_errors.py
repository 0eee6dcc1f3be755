"""Tests for the error taxonomy."""

from multiauth.errors import (
    DuplicateIdentifierError,
    ErrorKind,
    LastMethodCannotBeUnboundError,
    MultiAuthError,
    ProviderExchangeFailedError,
    RateLimitedError,
    UserNotFoundError,
)


def test_default_message_and_kind() -> None:
    err = UserNotFoundError()
    assert err.kind == ErrorKind.NOT_FOUND
    assert err.message == "User not found"
    assert str(err) == "User not found"
    assert isinstance(err, MultiAuthError)


def test_to_dict_has_no_stack_detail() -> None:
    assert LastMethodCannotBeUnboundError().to_dict() == {
        "error": "invariant_violation",
        "message": "The last authentication method cannot be unbound",
    }


def test_rate_limited_carries_retry_after() -> None:
    err = RateLimitedError(retry_after=60)
    assert err.retry_after == 60
    assert err.to_dict()["details"] == {"retry_after": 60}


def test_provider_error_names_provider() -> None:
    err = ProviderExchangeFailedError("github", "request timed out")
    assert err.provider == "github"
    assert err.kind == ErrorKind.PROVIDER_EXCHANGE_FAILED
    assert err.message == "github: request timed out"


def test_duplicate_identifier() -> None:
    err = DuplicateIdentifierError("EMAIL", "a@x.com")
    assert err.kind == ErrorKind.CONFLICT
    assert err.identifier == "a@x.com"
