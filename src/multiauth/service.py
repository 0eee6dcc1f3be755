"""Registration/login orchestrator — the engine's public facade.

Wires resolver, verification codes, merge workflow, binder, MFA and role
assignment together. Every multi-step flow goes through here:

    register ──▶ resolve ──▶ existing? ──▶ conflicts? ──▶ merge request
                               │              └──────────▶ idempotent return
                               └──▶ create ──▶ assign role ──▶ issue code?
"""

from __future__ import annotations

import asyncio
import logging

import bcrypt

from multiauth.binding import AuthMethodBinder
from multiauth.config import Settings
from multiauth.delivery.base import Deliverer
from multiauth.errors import (
    DuplicateIdentifierError,
    IdentifierTakenError,
    InvalidCredentialsError,
    InvalidInputError,
    InvalidVerificationCodeError,
    UserNotFoundError,
)
from multiauth.identity.resolver import IdentityResolver
from multiauth.merge.conflicts import detect_conflicts, incoming_fields
from multiauth.merge.workflow import MergeWorkflow
from multiauth.methods import IdentityMethod, get_method
from multiauth.mfa import (
    DeliveredCodeVerifier,
    MfaConfigurator,
    SecondFactor,
    SecondFactorVerifier,
)
from multiauth.models.identity import Account, AuthMethod, IdentityBinding, MfaSettings
from multiauth.models.merge import AccountMergeRequest, MergeResolution
from multiauth.models.results import LoginResult, RegistrationResult
from multiauth.models.verification import CodePurpose, VerificationCode
from multiauth.providers.base import ProviderNormalizer
from multiauth.rbac.base import RbacProvider
from multiauth.rbac.bridge import RoleAssignmentBridge
from multiauth.rbac.local import LocalRbacProvider
from multiauth.storage.base import IdentityRepository
from multiauth.storage.sqlite import StorageEngine
from multiauth.util import Clock, gen_id, utcnow
from multiauth.verification.codes import VerificationCodeManager

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


class MultiAuthService:
    """Facade over the identity engine.

    Args:
        repository: Persistence for accounts, codes and merge requests.
        settings: Engine configuration; defaults apply when omitted.
        rbac: Role collaborator. Without one, new accounts get no role.
        deliverer: Transport for verification codes.
        second_factor: Login second-factor check. Defaults to codes delivered
            over the configured MFA methods, with backup codes as fallback.
        clock: Source of "now"; injectable for tests.
    """

    def __init__(
        self,
        repository: IdentityRepository,
        *,
        settings: Settings | None = None,
        rbac: RbacProvider | None = None,
        deliverer: Deliverer | None = None,
        second_factor: SecondFactorVerifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings or Settings()
        self.repository = repository
        self._clock = clock
        self.resolver = IdentityResolver(repository)
        self.codes = VerificationCodeManager(repository, self.settings.codes, deliverer, clock)
        self.merges = MergeWorkflow(repository, self.settings.merge_ttl_hours, clock)
        self.binder = AuthMethodBinder(repository, self.codes, clock)
        self.mfa = MfaConfigurator(repository, self.settings.mfa, clock)
        self.roles = (
            RoleAssignmentBridge(repository, rbac, self.settings.super_admin_role)
            if rbac is not None
            else None
        )
        self._second_factor = second_factor or DeliveredCodeVerifier(self.codes, self.mfa)
        self._storage: StorageEngine | None = None

    @classmethod
    async def open(
        cls,
        settings: Settings | None = None,
        *,
        deliverer: Deliverer | None = None,
        clock: Clock = utcnow,
    ) -> MultiAuthService:
        """Open the SQLite store named in ``settings`` with seeded local roles."""
        settings = settings or Settings()
        storage = StorageEngine(settings.database_path)
        await storage.initialize()
        rbac = LocalRbacProvider(
            storage,
            default_role=settings.default_role,
            super_admin_role=settings.super_admin_role,
        )
        await rbac.seed()
        service = cls(storage, settings=settings, rbac=rbac, deliverer=deliverer, clock=clock)
        service._storage = storage
        return service

    async def close(self) -> None:
        if self._storage is not None:
            await self._storage.close()
            self._storage = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        auth_method: AuthMethod | str,
        identifier: str,
        password: str | None = None,
        additional_data: dict | None = None,
        *,
        oauth_metadata: dict[str, dict] | None = None,
    ) -> RegistrationResult:
        method = get_method(auth_method)
        normalized = method.normalize(identifier)
        profile = dict(additional_data or {})
        if password is not None and method.auth_method != AuthMethod.EMAIL:
            raise InvalidInputError("Passwords are only accepted for email registration")
        if password is not None and not 0 < len(password.encode("utf-8")) <= MAX_PASSWORD_BYTES:
            raise InvalidInputError(f"Password must be 1-{MAX_PASSWORD_BYTES} bytes")

        existing = await self._resolve_incoming(method, normalized, profile)
        if existing is not None:
            return await self._match_existing(existing, method, normalized, profile, oauth_metadata)

        account = await self._new_account(method, normalized, password, profile, oauth_metadata)
        try:
            await self.repository.create_account(account)
        except DuplicateIdentifierError:
            # Lost a registration race; the winner's account is now visible.
            existing = await self.resolver.find_by_identifier(method.auth_method, normalized)
            if existing is None:
                raise IdentifierTakenError(
                    f"{method.auth_method} {normalized} is already registered"
                ) from None
            return await self._match_existing(existing, method, normalized, profile, oauth_metadata)

        logger.info("Created account %s via %s", account.id, method.auth_method)
        if self.roles is not None:
            await self.roles.assign_initial_role(account)

        if method.requires_verification:
            return await self._registration_code(account, method, normalized, profile, created=True)
        return RegistrationResult(success=True, account=account, created=True)

    async def _resolve_incoming(
        self, method: IdentityMethod, normalized: str, profile: dict
    ) -> Account | None:
        account = await self.resolver.find_by_identifier(method.auth_method, normalized)
        if account is not None or not method.is_federated:
            return account
        email = profile.get("email")
        if not email:
            return None
        try:
            return await self.resolver.find_by_email(email)
        except InvalidInputError:
            logger.debug("Ignoring malformed profile email from %s", method.auth_method)
            return None

    async def _new_account(
        self,
        method: IdentityMethod,
        normalized: str,
        password: str | None,
        profile: dict,
        oauth_metadata: dict[str, dict] | None,
    ) -> Account:
        now = self._clock()
        fields = incoming_fields(method.auth_method, normalized, profile)
        return Account(
            id=gen_id("user"),
            primary_auth_method=method.auth_method,
            identities=[
                IdentityBinding(
                    method=method.auth_method,
                    identifier=normalized,
                    verified=method.is_federated,
                    bound_at=now,
                )
            ],
            first_name=fields.get("first_name"),
            last_name=fields.get("last_name"),
            avatar_url=fields.get("avatar_url"),
            password_hash=await self._hash_password(password) if password else None,
            oauth_metadata=dict(oauth_metadata or {}),
            created_at=now,
            updated_at=now,
        )

    async def _match_existing(
        self,
        existing: Account,
        method: IdentityMethod,
        normalized: str,
        profile: dict,
        oauth_metadata: dict[str, dict] | None,
    ) -> RegistrationResult:
        conflicts = detect_conflicts(existing, method.auth_method, normalized, profile)
        if conflicts:
            request = await self.merges.create_merge_request(
                existing, method.auth_method, normalized, conflicts
            )
            return RegistrationResult(
                success=False,
                requires_merge=True,
                merge_request_id=request.id,
                conflicts=conflicts,
            )

        binding = self._matching_binding(existing, method, normalized)
        if binding is None and method.is_federated:
            # Matched by provider email; the provider vouches for the new id.
            existing = await self.binder.bind(existing.id, method.auth_method, normalized)
            if oauth_metadata:
                existing = await self.repository.update_account(
                    existing.id, lambda account: account.oauth_metadata.update(oauth_metadata)
                )
            return RegistrationResult(success=True, account=existing)

        if binding is not None and method.requires_verification and not binding.verified:
            return await self._registration_code(existing, method, normalized, profile, created=False)
        return RegistrationResult(success=True, account=existing)

    async def _registration_code(
        self,
        account: Account,
        method: IdentityMethod,
        normalized: str,
        profile: dict,
        *,
        created: bool,
    ) -> RegistrationResult:
        code, delivered = await self.codes.issue_and_deliver(
            normalized,
            method.auth_method,
            CodePurpose.REGISTRATION,
            metadata={"account_id": account.id},
            contact=profile.get("contact"),
        )
        return RegistrationResult(
            success=True,
            account=account,
            created=created,
            requires_verification=True,
            verification_code_id=code.id,
            code_delivered=delivered,
        )

    async def complete_registration(
        self, auth_method: AuthMethod | str, identifier: str, code: str
    ) -> Account:
        """Check a registration code and mark the proven binding verified."""
        method = get_method(auth_method)
        normalized = method.normalize(identifier)
        account = await self.resolver.find_by_identifier(method.auth_method, normalized)
        if account is None:
            raise UserNotFoundError(f"No account for {method.auth_method} {normalized}")
        await self.codes.require(code, normalized, method.auth_method, CodePurpose.REGISTRATION)
        return await self._mark_verified(account, method, normalized)

    async def federated_login(
        self,
        normalizer: ProviderNormalizer,
        code: str,
        second_factor: SecondFactor | None = None,
    ) -> RegistrationResult:
        """Exchange a provider code, then sign in or register the identity.

        Reaching an existing account, by provider id or by profile email,
        passes the same MFA gate as ``login`` before anything is written.
        """
        identity = await normalizer.normalize(code)
        method = get_method(normalizer.auth_method)
        provider_id = method.normalize(identity.provider_id)
        profile = identity.profile()
        metadata = {
            "provider_id": identity.provider_id,
            "email": identity.primary_email,
            **identity.raw_metadata,
        }

        account = await self._resolve_incoming(method, provider_id, profile)
        if account is not None and account.mfa_enabled:
            if second_factor is None:
                challenged = await self._second_factor.challenge(account)
                return RegistrationResult(success=False, requires_mfa=True, mfa_methods=challenged)
            await self._verify_second_factor(account, second_factor)

        if account is not None and self._matching_binding(account, method, provider_id):

            def refresh(current: Account) -> None:
                current.oauth_metadata[identity.provider_name] = metadata
                current.updated_at = self._clock()

            account = await self.repository.update_account(account.id, refresh)
            logger.info("Refreshed %s metadata for account %s", identity.provider_name, account.id)
            return RegistrationResult(success=True, account=account)

        return await self.register(
            method.auth_method,
            provider_id,
            additional_data=profile,
            oauth_metadata={identity.provider_name: metadata},
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self,
        auth_method: AuthMethod | str,
        identifier: str,
        password: str | None = None,
        verification_code: str | None = None,
        second_factor: SecondFactor | None = None,
    ) -> LoginResult:
        """Sign in with any bound method.

        ``second_factor`` is a backup code, or a mapping of MFA method to the
        code delivered over it. Without one, an MFA account gets fresh codes
        and ``requires_mfa``; no login code is consumed in that case.
        """
        method = get_method(auth_method)
        normalized = method.normalize(identifier)
        account = await self.resolver.find_by_identifier(method.auth_method, normalized)
        if account is None:
            raise UserNotFoundError(f"No account for {method.auth_method} {normalized}")

        if password is not None:
            if not account.password_hash:
                raise InvalidCredentialsError()
            if not await self._check_password(password, account.password_hash):
                raise InvalidCredentialsError()

        if account.mfa_enabled and second_factor is None:
            challenged = await self._second_factor.challenge(account)
            return LoginResult(success=False, requires_mfa=True, mfa_methods=challenged)

        if verification_code is not None:
            await self.codes.require(
                verification_code, normalized, method.auth_method, CodePurpose.LOGIN
            )
            await self._mark_verified(account, method, normalized)

        if account.mfa_enabled:
            await self._verify_second_factor(account, second_factor)

        account = await self.resolver.get_account(account.id)
        logger.info("Account %s signed in via %s", account.id, method.auth_method)
        return LoginResult(success=True, account=account)

    # ------------------------------------------------------------------
    # Methods, merges, MFA, codes
    # ------------------------------------------------------------------

    async def bind(
        self,
        account_id: str,
        auth_method: AuthMethod | str,
        identifier: str,
        verification_code: str | None = None,
    ) -> Account:
        return await self.binder.bind(account_id, auth_method, identifier, verification_code)

    async def unbind(
        self,
        account_id: str,
        auth_method: AuthMethod | str,
        verification_code: str | None = None,
    ) -> Account:
        return await self.binder.unbind(account_id, auth_method, verification_code)

    async def get_merge_request(self, request_id: str) -> AccountMergeRequest:
        return await self.merges.get(request_id)

    async def resolve_merge(self, request_id: str, resolution: MergeResolution) -> Account:
        return await self.merges.resolve(request_id, resolution)

    async def reject_merge(self, request_id: str) -> AccountMergeRequest:
        return await self.merges.reject(request_id)

    async def expire_stale_merges(self) -> int:
        return await self.merges.expire_stale()

    async def setup_mfa(
        self,
        account_id: str,
        methods: list[AuthMethod | str],
        required_methods: int = 1,
    ) -> MfaSettings:
        return await self.mfa.setup(account_id, methods, required_methods)

    async def disable_mfa(self, account_id: str) -> None:
        await self.mfa.disable(account_id)

    async def issue_verification_code(
        self,
        identifier: str,
        auth_method: AuthMethod | str,
        purpose: CodePurpose | str,
        metadata: dict | None = None,
        contact: str | None = None,
    ) -> tuple[VerificationCode, bool]:
        return await self.codes.issue_and_deliver(
            identifier, auth_method, purpose, metadata, contact
        )

    async def verify_code(
        self,
        code: str,
        identifier: str,
        auth_method: AuthMethod | str,
        purpose: CodePurpose | str,
    ) -> bool:
        return await self.codes.verify(code, identifier, auth_method, purpose)

    async def available_methods(self, account_id: str) -> list[AuthMethod]:
        account = await self.resolver.get_account(account_id)
        return account.available_auth_methods

    async def get_account(self, account_id: str) -> Account:
        return await self.resolver.get_account(account_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _matching_binding(
        account: Account, method: IdentityMethod, normalized: str
    ) -> IdentityBinding | None:
        for lookup in method.lookup_methods:
            binding = account.binding(lookup)
            if binding is not None and binding.identifier == normalized:
                return binding
        return None

    async def _mark_verified(
        self, account: Account, method: IdentityMethod, normalized: str
    ) -> Account:
        binding = self._matching_binding(account, method, normalized)
        if binding is None or binding.verified:
            return account

        def verify(current: Account) -> bool:
            target = self._matching_binding(current, method, normalized)
            if target is None or target.verified:
                return False
            target.verified = True
            current.updated_at = self._clock()
            return True

        updated = await self.repository.update_account(account.id, verify)
        logger.info("Verified %s for account %s", binding.method, account.id)
        return updated or account

    async def _verify_second_factor(self, account: Account, second_factor: SecondFactor) -> None:
        if not await self._second_factor.verify(account, second_factor):
            raise InvalidVerificationCodeError("Second factor was not accepted")

    async def _hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.settings.password_rounds)
        hashed = await asyncio.to_thread(bcrypt.hashpw, password.encode("utf-8"), salt)
        return hashed.decode("utf-8")

    @staticmethod
    async def _check_password(password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(
            bcrypt.checkpw, password.encode("utf-8"), password_hash.encode("utf-8")
        )
