"""Auth-method binder — attach and detach sign-in methods on an account.

An account always keeps at least one method; unbinding the last one would
leave it unrecoverable.
"""

from __future__ import annotations

import logging

from multiauth.errors import (
    DuplicateIdentifierError,
    IdentifierTakenError,
    LastMethodCannotBeUnboundError,
    MethodAlreadyBoundError,
    MethodNotBoundError,
    UserNotFoundError,
)
from multiauth.methods import get_method
from multiauth.models.identity import Account, AuthMethod, IdentityBinding
from multiauth.models.verification import CodePurpose
from multiauth.storage.base import AccountMutator, IdentityRepository
from multiauth.util import Clock, utcnow
from multiauth.verification.codes import VerificationCodeManager

logger = logging.getLogger(__name__)


class AuthMethodBinder:
    def __init__(
        self,
        repository: IdentityRepository,
        codes: VerificationCodeManager,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._codes = codes
        self._clock = clock

    async def _load(self, account_id: str) -> Account:
        account = await self._repository.get_account(account_id)
        if account is None:
            raise UserNotFoundError(f"User not found: {account_id}")
        return account

    async def _update(self, account_id: str, mutate: AccountMutator) -> Account:
        account = await self._repository.update_account(account_id, mutate)
        if account is None:
            raise UserNotFoundError(f"User not found: {account_id}")
        return account

    async def bind(
        self,
        account_id: str,
        auth_method: AuthMethod | str,
        identifier: str,
        verification_code: str | None = None,
    ) -> Account:
        method = get_method(auth_method)
        normalized = method.normalize(identifier)
        account = await self._load(account_id)

        if account.binding(method.auth_method) is not None:
            raise MethodAlreadyBoundError(f"{method.auth_method} is already bound")

        owner = await self._repository.find_account_by_identity(method.lookup_methods, normalized)
        if owner is not None and owner.id != account.id:
            raise IdentifierTakenError(f"{method.auth_method} {normalized} belongs to another account")

        if verification_code is not None:
            await self._codes.require(
                verification_code, normalized, method.auth_method, CodePurpose.BINDING
            )

        now = self._clock()

        def attach(current: Account) -> None:
            if current.binding(method.auth_method) is not None:
                raise MethodAlreadyBoundError(f"{method.auth_method} is already bound")
            current.identities.append(
                IdentityBinding(
                    method=method.auth_method,
                    identifier=normalized,
                    verified=verification_code is not None or method.is_federated,
                    bound_at=now,
                )
            )
            current.updated_at = now

        try:
            account = await self._update(account_id, attach)
        except DuplicateIdentifierError as exc:
            raise IdentifierTakenError(exc.message) from exc

        logger.info("Bound %s to account %s", method.auth_method, account.id)
        return account

    async def unbind(
        self,
        account_id: str,
        auth_method: AuthMethod | str,
        verification_code: str | None = None,
    ) -> Account:
        method = get_method(auth_method)
        account = await self._load(account_id)

        if len(account.available_auth_methods) <= 1:
            raise LastMethodCannotBeUnboundError()

        binding = account.binding(method.auth_method)
        if binding is None:
            raise MethodNotBoundError(f"{method.auth_method} is not bound")

        if verification_code is not None:
            await self._codes.require(
                verification_code, binding.identifier, method.auth_method, CodePurpose.UNBINDING
            )

        def detach(current: Account) -> None:
            # Re-checked on the fresh copy; a concurrent unbind may have run
            if len(current.available_auth_methods) <= 1:
                raise LastMethodCannotBeUnboundError()
            if current.binding(method.auth_method) is None:
                raise MethodNotBoundError(f"{method.auth_method} is not bound")
            current.identities = [b for b in current.identities if b.method != method.auth_method]
            if current.primary_auth_method == method.auth_method:
                current.primary_auth_method = current.identities[0].method
            current.updated_at = self._clock()

        account = await self._update(account_id, detach)
        logger.info("Unbound %s from account %s", method.auth_method, account.id)
        return account
