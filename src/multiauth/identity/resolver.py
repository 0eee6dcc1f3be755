"""Identity resolver — the single answer to "does this identity already exist"."""

from __future__ import annotations

from multiauth.errors import UserNotFoundError
from multiauth.methods import get_method
from multiauth.models.identity import Account, AuthMethod
from multiauth.storage.base import IdentityRepository


class IdentityResolver:
    """Looks accounts up by (method, identifier). Never writes."""

    def __init__(self, repository: IdentityRepository) -> None:
        self._repository = repository

    async def find_by_identifier(
        self, auth_method: AuthMethod | str, identifier: str
    ) -> Account | None:
        """Normalize ``identifier`` for its method and find the owning account.

        Methods sharing an account field resolve against each other, so a
        phone bound via WhatsApp is found by a Telegram lookup too.
        """
        method = get_method(auth_method)
        normalized = method.normalize(identifier)
        return await self._repository.find_account_by_identity(method.lookup_methods, normalized)

    async def find_by_email(self, email: str) -> Account | None:
        return await self.find_by_identifier(AuthMethod.EMAIL, email)

    async def get_account(self, account_id: str) -> Account:
        account = await self._repository.get_account(account_id)
        if account is None:
            raise UserNotFoundError(f"User not found: {account_id}")
        return account
