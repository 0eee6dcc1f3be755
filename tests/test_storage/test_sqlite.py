"""Tests for SQLite storage layer."""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from multiauth.errors import DuplicateIdentifierError
from multiauth.models.identity import Account, AuthMethod, IdentityBinding, MfaSettings
from multiauth.models.merge import (
    AccountMergeRequest,
    FieldConflict,
    MergeResolution,
    MergeSide,
    MergeStatus,
)
from multiauth.models.verification import CodePurpose, VerificationCode
from multiauth.storage.sqlite import StorageEngine

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def storage(tmp_path: Path):
    db_path = tmp_path / "test.db"
    engine = StorageEngine(db_path)
    await engine.initialize()
    yield engine
    await engine.close()


def _account(account_id: str = "user-1", email: str = "alice@example.com") -> Account:
    return Account(
        id=account_id,
        primary_auth_method=AuthMethod.EMAIL,
        identities=[IdentityBinding(method=AuthMethod.EMAIL, identifier=email, bound_at=NOW)],
        first_name="Alice",
        created_at=NOW,
        updated_at=NOW,
    )


def _code(code_id: str, created_at: datetime = NOW, code: str = "123456") -> VerificationCode:
    return VerificationCode(
        id=code_id,
        code=code,
        identifier="+15551234567",
        auth_method=AuthMethod.PHONE_TELEGRAM,
        purpose=CodePurpose.LOGIN,
        expires_at=created_at + timedelta(minutes=10),
        created_at=created_at,
    )


def _merge_request(request_id: str = "merge-1", expires_at: datetime | None = None):
    return AccountMergeRequest(
        id=request_id,
        primary_user_id="user-1",
        secondary_user_id="user-1",
        auth_method=AuthMethod.GITHUB,
        identifier="42",
        conflicts={"first_name": FieldConflict(primary="Alice", secondary="Alicia")},
        expires_at=expires_at or NOW + timedelta(hours=24),
        created_at=NOW,
    )


@pytest.mark.asyncio
async def test_initialize_creates_tables(storage: StorageEngine) -> None:
    cursor = await storage.db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    rows = await cursor.fetchall()
    table_names = {row[0] for row in rows}
    assert "accounts" in table_names
    assert "account_identities" in table_names
    assert "verification_codes" in table_names
    assert "merge_requests" in table_names
    assert "roles" in table_names
    assert "role_assignments" in table_names


@pytest.mark.asyncio
async def test_create_and_get_account(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    result = await storage.get_account("user-1")
    assert result is not None
    assert result.first_name == "Alice"
    assert result.email == "alice@example.com"
    assert result.available_auth_methods == [AuthMethod.EMAIL]
    assert result.created_at == NOW


@pytest.mark.asyncio
async def test_get_missing_account(storage: StorageEngine) -> None:
    assert await storage.get_account("nope") is None


@pytest.mark.asyncio
async def test_update_account_keeps_binding_order(storage: StorageEngine) -> None:
    await storage.create_account(_account())

    def extend(account: Account) -> None:
        account.identities.append(
            IdentityBinding(method=AuthMethod.GITHUB, identifier="42", verified=True, bound_at=NOW)
        )
        account.identities.append(
            IdentityBinding(
                method=AuthMethod.PHONE_WHATSAPP, identifier="+15551234567", bound_at=NOW
            )
        )
        account.mfa_settings = MfaSettings(
            enabled=True, methods=[AuthMethod.EMAIL], required_methods=1
        )
        account.oauth_metadata = {"github": {"username": "alice"}}

    updated = await storage.update_account("user-1", extend)
    assert updated.is_verified(AuthMethod.GITHUB)

    result = await storage.get_account("user-1")
    assert result is not None
    assert result.available_auth_methods == [
        AuthMethod.EMAIL,
        AuthMethod.GITHUB,
        AuthMethod.PHONE_WHATSAPP,
    ]
    assert result.is_verified(AuthMethod.GITHUB)
    assert result.mfa_enabled
    assert result.oauth_metadata["github"]["username"] == "alice"


@pytest.mark.asyncio
async def test_update_account_missing_or_declined(storage: StorageEngine) -> None:
    assert await storage.update_account("nope", lambda account: None) is None

    await storage.create_account(_account())

    def decline(account: Account) -> bool:
        account.first_name = "Mallory"
        return False

    await storage.update_account("user-1", decline)
    assert (await storage.get_account("user-1")).first_name == "Alice"


@pytest.mark.asyncio
async def test_concurrent_updates_do_not_overwrite(storage: StorageEngine) -> None:
    await storage.create_account(_account())

    def bind(method: AuthMethod, identifier: str):
        def mutate(account: Account) -> None:
            account.identities.append(
                IdentityBinding(method=method, identifier=identifier, bound_at=NOW)
            )

        return mutate

    await asyncio.gather(
        storage.update_account("user-1", bind(AuthMethod.GITHUB, "42")),
        storage.update_account("user-1", bind(AuthMethod.VKONTAKTE, "id7")),
        storage.update_account("user-1", bind(AuthMethod.GOSUSLUGI, "g-1")),
    )
    result = await storage.get_account("user-1")
    assert len(result.identities) == 4


@pytest.mark.asyncio
async def test_find_account_by_identity(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    found = await storage.find_account_by_identity([AuthMethod.EMAIL], "alice@example.com")
    assert found is not None
    assert found.id == "user-1"
    assert await storage.find_account_by_identity([AuthMethod.GITHUB], "alice@example.com") is None
    assert await storage.find_account_by_identity([], "alice@example.com") is None


@pytest.mark.asyncio
async def test_duplicate_identifier_rejected(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    with pytest.raises(DuplicateIdentifierError):
        await storage.create_account(_account("user-2"))
    # the failed insert rolled back completely
    assert await storage.get_account("user-2") is None
    assert await storage.count_accounts() == 1


@pytest.mark.asyncio
async def test_update_account_duplicate_rolls_back(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    await storage.create_account(_account("user-2", "bob@example.com"))

    def steal(account: Account) -> None:
        account.first_name = "Bob"
        account.identities = [
            IdentityBinding(method=AuthMethod.EMAIL, identifier="alice@example.com", bound_at=NOW)
        ]

    with pytest.raises(DuplicateIdentifierError):
        await storage.update_account("user-2", steal)
    result = await storage.get_account("user-2")
    assert result is not None
    assert result.email == "bob@example.com"
    assert result.first_name == "Alice"


@pytest.mark.asyncio
async def test_phone_owned_across_messenger_methods(storage: StorageEngine) -> None:
    whatsapp = Account(
        id="user-1",
        primary_auth_method=AuthMethod.PHONE_WHATSAPP,
        identities=[
            IdentityBinding(
                method=AuthMethod.PHONE_WHATSAPP, identifier="+15551234567", bound_at=NOW
            )
        ],
        created_at=NOW,
        updated_at=NOW,
    )
    await storage.create_account(whatsapp)
    telegram = whatsapp.model_copy(
        update={
            "id": "user-2",
            "primary_auth_method": AuthMethod.PHONE_TELEGRAM,
            "identities": [
                IdentityBinding(
                    method=AuthMethod.PHONE_TELEGRAM, identifier="+15551234567", bound_at=NOW
                )
            ],
        }
    )
    with pytest.raises(DuplicateIdentifierError):
        await storage.create_account(telegram)
    assert await storage.get_account("user-2") is None

    def add_telegram(account: Account) -> None:
        account.identities.append(
            IdentityBinding(
                method=AuthMethod.PHONE_TELEGRAM, identifier="+15551234567", bound_at=NOW
            )
        )

    updated = await storage.update_account("user-1", add_telegram)
    assert updated.available_auth_methods == [
        AuthMethod.PHONE_WHATSAPP,
        AuthMethod.PHONE_TELEGRAM,
    ]


@pytest.mark.asyncio
async def test_insert_code_respects_limit(storage: StorageEngine) -> None:
    window_start = NOW - timedelta(seconds=60)
    for i in range(3):
        assert await storage.insert_code_if_allowed(
            _code(f"code-{i}"), window_start=window_start, limit=3
        )
    assert not await storage.insert_code_if_allowed(
        _code("code-3"), window_start=window_start, limit=3
    )
    count = await storage.count_recent_codes("+15551234567", AuthMethod.PHONE_TELEGRAM, window_start)
    assert count == 3


@pytest.mark.asyncio
async def test_insert_code_old_codes_outside_window(storage: StorageEngine) -> None:
    old = NOW - timedelta(minutes=5)
    for i in range(3):
        await storage.insert_code_if_allowed(
            _code(f"old-{i}", created_at=old), window_start=old - timedelta(seconds=60), limit=3
        )
    assert await storage.insert_code_if_allowed(
        _code("fresh"), window_start=NOW - timedelta(seconds=60), limit=3
    )


@pytest.mark.asyncio
async def test_find_unused_code_and_mark_used(storage: StorageEngine) -> None:
    await storage.insert_code_if_allowed(_code("code-1"), window_start=NOW, limit=3)
    found = await storage.find_unused_code(
        "123456", "+15551234567", AuthMethod.PHONE_TELEGRAM, CodePurpose.LOGIN
    )
    assert found is not None
    assert found.id == "code-1"
    assert await storage.mark_code_used("code-1") is True
    assert await storage.mark_code_used("code-1") is False
    assert (
        await storage.find_unused_code(
            "123456", "+15551234567", AuthMethod.PHONE_TELEGRAM, CodePurpose.LOGIN
        )
        is None
    )


@pytest.mark.asyncio
async def test_find_unused_code_is_purpose_scoped(storage: StorageEngine) -> None:
    await storage.insert_code_if_allowed(_code("code-1"), window_start=NOW, limit=3)
    found = await storage.find_unused_code(
        "123456", "+15551234567", AuthMethod.PHONE_TELEGRAM, CodePurpose.BINDING
    )
    assert found is None


@pytest.mark.asyncio
async def test_merge_request_roundtrip(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    await storage.create_merge_request(_merge_request())
    result = await storage.get_merge_request("merge-1")
    assert result is not None
    assert result.status == MergeStatus.PENDING
    assert result.conflicts["first_name"].secondary == "Alicia"
    assert result.resolution is None

    pending = await storage.list_merge_requests(status=MergeStatus.PENDING)
    assert [r.id for r in pending] == ["merge-1"]
    assert await storage.list_merge_requests(primary_user_id="someone-else") == []


@pytest.mark.asyncio
async def test_transition_merge_request_is_compare_and_set(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    await storage.create_merge_request(_merge_request())
    assert await storage.transition_merge_request(
        "merge-1", from_status=MergeStatus.PENDING, to_status=MergeStatus.REJECTED, resolved_at=NOW
    )
    assert not await storage.transition_merge_request(
        "merge-1", from_status=MergeStatus.PENDING, to_status=MergeStatus.EXPIRED
    )
    result = await storage.get_merge_request("merge-1")
    assert result.status == MergeStatus.REJECTED
    assert result.resolved_at == NOW


@pytest.mark.asyncio
async def test_complete_merge_updates_account_once(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    await storage.create_merge_request(_merge_request())
    resolution = MergeResolution(choices={"first_name": MergeSide.SECONDARY})

    def rename(name: str):
        def mutate(account: Account) -> None:
            account.first_name = name

        return mutate

    merged = await storage.complete_merge(
        "merge-1", "user-1", rename("Alicia"), resolution=resolution, resolved_at=NOW
    )
    assert merged.first_name == "Alicia"
    assert (
        await storage.complete_merge(
            "merge-1", "user-1", rename("Mallory"), resolution=resolution, resolved_at=NOW
        )
        is None
    )

    stored = await storage.get_account("user-1")
    assert stored.first_name == "Alicia"
    request = await storage.get_merge_request("merge-1")
    assert request.status == MergeStatus.RESOLVED
    assert request.resolution.choices == {"first_name": MergeSide.SECONDARY}


@pytest.mark.asyncio
async def test_expire_merge_requests(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    await storage.create_merge_request(_merge_request("old", expires_at=NOW - timedelta(hours=1)))
    await storage.create_merge_request(_merge_request("new"))
    assert await storage.expire_merge_requests(NOW) == 1
    assert (await storage.get_merge_request("old")).status == MergeStatus.EXPIRED
    assert (await storage.get_merge_request("new")).status == MergeStatus.PENDING


@pytest.mark.asyncio
async def test_roles_and_assignments(storage: StorageEngine) -> None:
    await storage.create_account(_account())
    await storage.ensure_role(role_id="role-user", name="user", is_system=True)
    await storage.ensure_role(role_id="role-user", name="user", is_system=True)
    role = await storage.get_role_by_name("user")
    assert role is not None
    assert role["id"] == "role-user"

    await storage.assign_role("user-1", "role-user")
    await storage.assign_role("user-1", "role-user")
    roles = await storage.list_account_roles("user-1")
    assert [r["name"] for r in roles] == ["user"]
    assert await storage.get_role_by_name("missing") is None
