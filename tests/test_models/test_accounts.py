"""Tests for account, verification code, and merge request models."""

from datetime import UTC, datetime, timedelta

from multiauth.models import (
    Account,
    AccountMergeRequest,
    AuthMethod,
    CodePurpose,
    FieldConflict,
    IdentityBinding,
    MergeStatus,
    MfaSettings,
    VerificationCode,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _account(*bindings: tuple[AuthMethod, str]) -> Account:
    return Account(
        id="user-1",
        primary_auth_method=bindings[0][0],
        identities=[
            IdentityBinding(method=m, identifier=i, bound_at=NOW) for m, i in bindings
        ],
        created_at=NOW,
        updated_at=NOW,
    )


def test_available_methods_follow_binding_order() -> None:
    account = _account((AuthMethod.GITHUB, "42"), (AuthMethod.EMAIL, "a@x.com"))
    assert account.available_auth_methods == [AuthMethod.GITHUB, AuthMethod.EMAIL]
    assert account.email == "a@x.com"
    assert account.identifier_for(AuthMethod.GITHUB) == "42"
    assert account.phone is None


def test_phone_from_either_messenger() -> None:
    account = _account((AuthMethod.PHONE_TELEGRAM, "+15551234567"))
    assert account.phone == "+15551234567"
    assert not account.is_verified(AuthMethod.PHONE_TELEGRAM)


def test_mfa_enabled() -> None:
    account = _account((AuthMethod.EMAIL, "a@x.com"))
    assert not account.mfa_enabled
    account.mfa_settings = MfaSettings()
    assert not account.mfa_enabled
    account.mfa_settings = MfaSettings(enabled=True, methods=[AuthMethod.EMAIL], required_methods=1)
    assert account.mfa_enabled


def test_mfa_settings_zero_value() -> None:
    settings = MfaSettings()
    assert settings.enabled is False
    assert settings.methods == []
    assert settings.backup_codes == []
    assert settings.required_methods == 0


def test_code_expiry() -> None:
    code = VerificationCode(
        id="code-1",
        code="123456",
        identifier="a@x.com",
        auth_method=AuthMethod.EMAIL,
        purpose=CodePurpose.LOGIN,
        expires_at=NOW + timedelta(minutes=10),
        created_at=NOW,
    )
    assert not code.is_expired(NOW + timedelta(minutes=10))
    assert code.is_expired(NOW + timedelta(minutes=10, seconds=1))


def test_merge_request_expiry() -> None:
    request = AccountMergeRequest(
        id="merge-1",
        primary_user_id="user-1",
        secondary_user_id="user-1",
        auth_method=AuthMethod.GITHUB,
        identifier="42",
        conflicts={"first_name": FieldConflict(primary="A", secondary="B")},
        expires_at=NOW + timedelta(hours=24),
        created_at=NOW,
    )
    assert not request.is_expired(NOW)
    assert request.is_expired(NOW + timedelta(hours=25))

    request.status = MergeStatus.RESOLVED
    assert not request.is_expired(NOW + timedelta(hours=25))
    request.status = MergeStatus.EXPIRED
    assert request.is_expired(NOW)
