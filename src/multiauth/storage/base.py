"""Repository contract for accounts, verification codes, and merge requests.

The engine only ever talks to this interface. Implementations must enforce
identifier ownership per account field (an identifier held under one phone
messenger belongs to the same account under the other), and make the
conditional writes below atomic: rate-limited code insertion, compare-and-set
state changes, and read-modify-write account updates.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from multiauth.models.identity import Account, AuthMethod
from multiauth.models.merge import AccountMergeRequest, MergeResolution, MergeStatus
from multiauth.models.verification import CodePurpose, VerificationCode

# Edits an account in place. Returning False leaves the stored row untouched.
AccountMutator = Callable[[Account], bool | None]


class IdentityRepository(ABC):
    # ----- Accounts -----

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """Persist a new account with its identity bindings.

        Raises DuplicateIdentifierError when any binding's identifier is
        already held by another account for the same field; nothing is
        written in that case.
        """

    @abstractmethod
    async def update_account(self, account_id: str, mutate: AccountMutator) -> Account | None:
        """Re-read the account, apply ``mutate`` and write it back as one unit.

        Concurrent updates to the same account never overwrite each other.
        Returns None when the account does not exist. Exceptions raised by
        ``mutate`` abort the update. Raises DuplicateIdentifierError like
        ``create_account``.
        """

    @abstractmethod
    async def get_account(self, account_id: str) -> Account | None: ...

    @abstractmethod
    async def find_account_by_identity(
        self, methods: list[AuthMethod], identifier: str
    ) -> Account | None:
        """Return the account holding ``identifier`` under any of ``methods``."""

    @abstractmethod
    async def count_accounts(self) -> int: ...

    # ----- Verification codes -----

    @abstractmethod
    async def insert_code_if_allowed(
        self, code: VerificationCode, *, window_start: datetime, limit: int
    ) -> bool:
        """Insert ``code`` only if fewer than ``limit`` codes exist for its
        identifier and method since ``window_start``. Must be one atomic unit.
        Returns False when the limit was reached."""

    @abstractmethod
    async def count_recent_codes(
        self, identifier: str, auth_method: AuthMethod, since: datetime
    ) -> int: ...

    @abstractmethod
    async def find_unused_code(
        self, code: str, identifier: str, auth_method: AuthMethod, purpose: CodePurpose
    ) -> VerificationCode | None: ...

    @abstractmethod
    async def mark_code_used(self, code_id: str) -> bool:
        """Flip ``is_used`` false→true. Returns False if it was already used."""

    # ----- Merge requests -----

    @abstractmethod
    async def create_merge_request(self, request: AccountMergeRequest) -> AccountMergeRequest: ...

    @abstractmethod
    async def get_merge_request(self, request_id: str) -> AccountMergeRequest | None: ...

    @abstractmethod
    async def list_merge_requests(
        self, *, status: MergeStatus | None = None, primary_user_id: str | None = None
    ) -> list[AccountMergeRequest]: ...

    @abstractmethod
    async def transition_merge_request(
        self,
        request_id: str,
        *,
        from_status: MergeStatus,
        to_status: MergeStatus,
        resolution: MergeResolution | None = None,
        resolved_at: datetime | None = None,
    ) -> bool:
        """Move a request between states only if it is still in ``from_status``."""

    @abstractmethod
    async def complete_merge(
        self,
        request_id: str,
        account_id: str,
        mutate: AccountMutator,
        *,
        resolution: MergeResolution,
        resolved_at: datetime,
    ) -> Account | None:
        """Mark the request resolved and apply ``mutate`` to the account as one unit.

        Returns None, writing nothing, if the request is no longer pending.
        """

    @abstractmethod
    async def expire_merge_requests(self, now: datetime) -> int:
        """Mark every pending request past its deadline as expired."""
