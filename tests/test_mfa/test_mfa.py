"""Tests for MFA setup, disable, and backup codes."""

import asyncio
import re
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio

from multiauth.errors import InvalidInputError, UserNotFoundError
from multiauth.delivery.base import Deliverer
from multiauth.mfa import BackupCodeVerifier, DeliveredCodeVerifier, MfaConfigurator
from multiauth.models.identity import Account, AuthMethod, IdentityBinding, MfaSettings
from multiauth.storage.sqlite import StorageEngine
from multiauth.verification.codes import VerificationCodeManager

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class Inbox(Deliverer):
    def __init__(self) -> None:
        self.codes: dict[str, str] = {}

    async def deliver(self, channel: str, destination: str, payload: dict) -> bool:
        self.codes[channel] = payload["code"]
        return True


@pytest_asyncio.fixture
async def storage(tmp_path: Path):
    db_path = tmp_path / "test.db"
    engine = StorageEngine(db_path)
    await engine.initialize()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def alice(storage: StorageEngine) -> Account:
    return await storage.create_account(
        Account(
            id="user-1",
            primary_auth_method=AuthMethod.EMAIL,
            identities=[
                IdentityBinding(method=AuthMethod.EMAIL, identifier="a@x.com", bound_at=NOW)
            ],
            created_at=NOW,
            updated_at=NOW,
        )
    )


@pytest.fixture
def mfa(storage: StorageEngine) -> MfaConfigurator:
    return MfaConfigurator(storage, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_setup_generates_backup_codes(
    mfa: MfaConfigurator, alice: Account, storage: StorageEngine
) -> None:
    settings = await mfa.setup(alice.id, [AuthMethod.EMAIL, "PHONE_TELEGRAM"], required_methods=2)
    assert settings.enabled
    assert settings.methods == [AuthMethod.EMAIL, AuthMethod.PHONE_TELEGRAM]
    assert settings.required_methods == 2
    assert len(settings.backup_codes) == 10
    assert len(set(settings.backup_codes)) == 10
    assert all(re.fullmatch(r"[A-Z0-9]{8}", c) for c in settings.backup_codes)
    assert (await storage.get_account(alice.id)).mfa_settings == settings


@pytest.mark.asyncio
async def test_setup_replaces_previous_codes(mfa: MfaConfigurator, alice: Account) -> None:
    first = await mfa.setup(alice.id, [AuthMethod.EMAIL])
    second = await mfa.setup(alice.id, [AuthMethod.EMAIL])
    assert set(first.backup_codes).isdisjoint(second.backup_codes)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("methods", "required"),
    [
        ([], 1),
        ([AuthMethod.EMAIL], 0),
        ([AuthMethod.EMAIL], 2),
        (["SMOKE_SIGNAL"], 1),
        ([AuthMethod.GITHUB], 1),
    ],
)
async def test_setup_validates_input(
    mfa: MfaConfigurator, alice: Account, methods: list, required: int
) -> None:
    with pytest.raises(InvalidInputError):
        await mfa.setup(alice.id, methods, required_methods=required)


@pytest.mark.asyncio
async def test_setup_missing_account(mfa: MfaConfigurator) -> None:
    with pytest.raises(UserNotFoundError):
        await mfa.setup("user-404", [AuthMethod.EMAIL])


@pytest.mark.asyncio
async def test_disable_is_zero_value(
    mfa: MfaConfigurator, alice: Account, storage: StorageEngine
) -> None:
    await mfa.setup(alice.id, [AuthMethod.EMAIL])
    await mfa.disable(alice.id)
    stored = await storage.get_account(alice.id)
    assert stored.mfa_settings == MfaSettings()
    assert not stored.mfa_enabled


@pytest.mark.asyncio
async def test_backup_code_single_use_case_insensitive(
    mfa: MfaConfigurator, alice: Account, storage: StorageEngine
) -> None:
    settings = await mfa.setup(alice.id, [AuthMethod.EMAIL])
    code = settings.backup_codes[3]
    assert await mfa.consume_backup_code(alice.id, f" {code.lower()} ")
    assert not await mfa.consume_backup_code(alice.id, code)
    stored = await storage.get_account(alice.id)
    assert stored.mfa_settings.backup_codes_used == [code]


@pytest.mark.asyncio
async def test_backup_code_rejected_when_disabled(mfa: MfaConfigurator, alice: Account) -> None:
    settings = await mfa.setup(alice.id, [AuthMethod.EMAIL])
    await mfa.disable(alice.id)
    assert not await mfa.consume_backup_code(alice.id, settings.backup_codes[0])
    assert not await mfa.consume_backup_code(alice.id, "WRONG123")


@pytest.mark.asyncio
async def test_backup_code_verifier(
    mfa: MfaConfigurator, alice: Account, storage: StorageEngine
) -> None:
    settings = await mfa.setup(alice.id, [AuthMethod.EMAIL])
    verifier = BackupCodeVerifier(mfa)
    account = await storage.get_account(alice.id)
    assert await verifier.verify(account, settings.backup_codes[0])
    assert not await verifier.verify(account, "nope")


@pytest.mark.asyncio
async def test_backup_code_concurrent_use(mfa: MfaConfigurator, alice: Account) -> None:
    settings = await mfa.setup(alice.id, [AuthMethod.EMAIL])
    results = await asyncio.gather(
        *(mfa.consume_backup_code(alice.id, settings.backup_codes[0]) for _ in range(5))
    )
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_delivered_code_verifier(
    mfa: MfaConfigurator, alice: Account, storage: StorageEngine
) -> None:
    inbox = Inbox()
    codes = VerificationCodeManager(storage, deliverer=inbox)
    verifier = DeliveredCodeVerifier(codes, mfa)
    settings = await mfa.setup(alice.id, [AuthMethod.EMAIL])
    account = await storage.get_account(alice.id)

    assert await verifier.challenge(account) == [AuthMethod.EMAIL]
    assert not await verifier.verify(account, {"EMAIL": "000000"})
    assert not await verifier.verify(account, {"PHONE_TELEGRAM": inbox.codes["email"]})
    assert await verifier.verify(account, {"EMAIL": inbox.codes["email"]})
    assert await verifier.verify(account, settings.backup_codes[1])


@pytest.mark.asyncio
async def test_delivered_code_verifier_skips_unbound_methods(
    mfa: MfaConfigurator, alice: Account, storage: StorageEngine
) -> None:
    inbox = Inbox()
    verifier = DeliveredCodeVerifier(VerificationCodeManager(storage, deliverer=inbox), mfa)
    await mfa.setup(alice.id, [AuthMethod.EMAIL, AuthMethod.PHONE_TELEGRAM])
    account = await storage.get_account(alice.id)
    assert await verifier.challenge(account) == [AuthMethod.EMAIL]
    assert set(inbox.codes) == {"email"}
