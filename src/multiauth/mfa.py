"""MFA configurator and second-factor verification."""

from __future__ import annotations

import logging
import secrets
import string
from abc import ABC, abstractmethod
from collections.abc import Mapping

from multiauth.config import MfaPolicy
from multiauth.errors import InvalidInputError, UserNotFoundError
from multiauth.methods import get_method
from multiauth.models.identity import Account, AuthMethod, MfaSettings
from multiauth.models.verification import CodePurpose
from multiauth.storage.base import AccountMutator, IdentityRepository
from multiauth.util import Clock, utcnow
from multiauth.verification.codes import VerificationCodeManager

logger = logging.getLogger(__name__)

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

# A backup code, or one delivered code per second-factor method
SecondFactor = str | Mapping[str, str]


class MfaConfigurator:
    """Enables and disables MFA. Settings are always replaced wholesale."""

    def __init__(
        self,
        repository: IdentityRepository,
        policy: MfaPolicy | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._policy = policy or MfaPolicy()
        self._clock = clock

    def generate_backup_codes(self) -> list[str]:
        codes: list[str] = []
        while len(codes) < self._policy.backup_code_count:
            code = "".join(
                secrets.choice(BACKUP_CODE_ALPHABET)
                for _ in range(self._policy.backup_code_length)
            )
            if code not in codes:
                codes.append(code)
        return codes

    async def setup(
        self,
        account_id: str,
        methods: list[AuthMethod | str],
        required_methods: int = 1,
    ) -> MfaSettings:
        factors: list[AuthMethod] = []
        for value in methods:
            method = get_method(value)
            if method.delivery_channel is None:
                raise InvalidInputError(f"{method.auth_method} cannot deliver second-factor codes")
            if method.auth_method not in factors:
                factors.append(method.auth_method)
        if not factors:
            raise InvalidInputError("At least one second-factor method is required")
        if not 1 <= required_methods <= len(factors):
            raise InvalidInputError(
                f"required_methods must be between 1 and {len(factors)}, got {required_methods}"
            )

        settings = MfaSettings(
            enabled=True,
            methods=factors,
            backup_codes=self.generate_backup_codes(),
            backup_codes_used=[],
            required_methods=required_methods,
        )

        def apply(account: Account) -> None:
            account.mfa_settings = settings
            account.updated_at = self._clock()

        await self._update(account_id, apply)
        logger.info("MFA enabled for account %s (%d methods)", account_id, len(factors))
        return settings

    async def disable(self, account_id: str) -> None:
        def apply(account: Account) -> None:
            account.mfa_settings = MfaSettings()
            account.updated_at = self._clock()

        await self._update(account_id, apply)
        logger.info("MFA disabled for account %s", account_id)

    async def consume_backup_code(self, account_id: str, code: str) -> bool:
        """Spend one backup code. Case-insensitive; each code works once."""
        candidate = (code or "").strip().upper()
        accepted = False

        def spend(account: Account) -> bool:
            nonlocal accepted
            settings = account.mfa_settings
            if settings is None or not settings.enabled:
                return False
            if candidate not in settings.backup_codes or candidate in settings.backup_codes_used:
                return False
            account.mfa_settings = settings.model_copy(
                update={"backup_codes_used": [*settings.backup_codes_used, candidate]}
            )
            account.updated_at = self._clock()
            accepted = True
            return True

        account = await self._update(account_id, spend)
        if accepted:
            settings = account.mfa_settings
            logger.info(
                "Backup code used for account %s (%d left)",
                account_id,
                len(settings.backup_codes) - len(settings.backup_codes_used),
            )
        return accepted

    async def _update(self, account_id: str, mutate: AccountMutator) -> Account:
        account = await self._repository.update_account(account_id, mutate)
        if account is None:
            raise UserNotFoundError(f"User not found: {account_id}")
        return account


class SecondFactorVerifier(ABC):
    """Checks the second factor presented at login. TOTP, push, etc. plug in here."""

    async def challenge(self, account: Account) -> list[AuthMethod]:
        """Send whatever the user needs to answer. Returns the methods challenged."""
        return []

    @abstractmethod
    async def verify(self, account: Account, second_factor: SecondFactor) -> bool: ...


class BackupCodeVerifier(SecondFactorVerifier):
    """Accepts unused backup codes only."""

    def __init__(self, configurator: MfaConfigurator) -> None:
        self._configurator = configurator

    async def verify(self, account: Account, second_factor: SecondFactor) -> bool:
        if not isinstance(second_factor, str):
            return False
        return await self._configurator.consume_backup_code(account.id, second_factor)


class DeliveredCodeVerifier(BackupCodeVerifier):
    """Codes sent over each configured method's channel, backup codes as fallback.

    ``challenge`` issues a ``two_factor`` code to every configured method the
    account has bound. ``verify`` takes a mapping of method to code and passes
    when at least ``required_methods`` distinct methods check out; a plain
    string is treated as a backup code.
    """

    def __init__(self, codes: VerificationCodeManager, configurator: MfaConfigurator) -> None:
        super().__init__(configurator)
        self._codes = codes

    async def challenge(self, account: Account) -> list[AuthMethod]:
        settings = account.mfa_settings
        if settings is None or not settings.enabled:
            return []
        challenged: list[AuthMethod] = []
        for method in settings.methods:
            binding = account.binding(method)
            if binding is None:
                logger.warning("MFA method %s is not bound on account %s", method, account.id)
                continue
            _, delivered = await self._codes.issue_and_deliver(
                binding.identifier,
                method,
                CodePurpose.TWO_FACTOR,
                metadata={"account_id": account.id},
            )
            if delivered:
                challenged.append(method)
        return challenged

    async def verify(self, account: Account, second_factor: SecondFactor) -> bool:
        if isinstance(second_factor, str):
            return await super().verify(account, second_factor)

        settings = account.mfa_settings
        if settings is None or not settings.enabled:
            return False
        passed: set[AuthMethod] = set()
        for key, code in second_factor.items():
            try:
                method = get_method(key).auth_method
            except InvalidInputError:
                continue
            binding = account.binding(method)
            if method not in settings.methods or method in passed or binding is None:
                continue
            if await self._codes.verify(code, binding.identifier, method, CodePurpose.TWO_FACTOR):
                passed.add(method)
        return len(passed) >= settings.required_methods
