"""Account merge workflow — persist collisions and finalize caller decisions.

This module supplies the conflict data and writes the outcome. Which side wins
each field is always the caller's choice, carried in MergeResolution.

State machine::

    pending ──resolve──▶ resolved
       │ ──reject───▶ rejected
       └──(now > expires_at, checked on access)──▶ expired

Nothing leaves resolved, rejected, or expired.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from multiauth.errors import (
    DuplicateIdentifierError,
    IdentifierTakenError,
    InvalidInputError,
    MergeAlreadyResolvedError,
    MergeExpiredError,
    MergeRequestNotFoundError,
    UserNotFoundError,
)
from multiauth.merge.conflicts import set_field_value
from multiauth.methods import get_method
from multiauth.models.identity import Account, AuthMethod, IdentityBinding
from multiauth.models.merge import (
    AccountMergeRequest,
    MergeConflicts,
    MergeResolution,
    MergeSide,
    MergeStatus,
)
from multiauth.storage.base import IdentityRepository
from multiauth.util import Clock, gen_id, utcnow

logger = logging.getLogger(__name__)


class MergeWorkflow:
    def __init__(
        self, repository: IdentityRepository, ttl_hours: int = 24, clock: Clock = utcnow
    ) -> None:
        self._repository = repository
        self._ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    async def create_merge_request(
        self,
        primary: Account,
        auth_method: AuthMethod | str,
        identifier: str,
        conflicts: MergeConflicts,
    ) -> AccountMergeRequest:
        """Persist a pending request. Notifying anyone is the caller's job."""
        if not conflicts:
            raise InvalidInputError("A merge request needs at least one conflict")
        method = get_method(auth_method)
        now = self._clock()
        request = AccountMergeRequest(
            id=gen_id("merge"),
            primary_user_id=primary.id,
            secondary_user_id=primary.id,
            auth_method=method.auth_method,
            identifier=method.normalize(identifier),
            conflicts=conflicts,
            expires_at=now + self._ttl,
            created_at=now,
        )
        await self._repository.create_merge_request(request)
        logger.info(
            "Merge request %s created for account %s (%s)",
            request.id,
            primary.id,
            ", ".join(sorted(conflicts)),
        )
        return request

    async def get(self, request_id: str) -> AccountMergeRequest:
        """Load a request, applying lazy expiry."""
        request = await self._repository.get_merge_request(request_id)
        if request is None:
            raise MergeRequestNotFoundError(f"Merge request not found: {request_id}")
        if request.status == MergeStatus.PENDING and request.is_expired(self._clock()):
            await self._repository.transition_merge_request(
                request.id, from_status=MergeStatus.PENDING, to_status=MergeStatus.EXPIRED
            )
            request.status = MergeStatus.EXPIRED
        return request

    async def resolve(self, request_id: str, resolution: MergeResolution) -> Account:
        """Apply ``resolution`` to the primary account and close the request.

        The account is re-read, edited and written in the same unit that flips
        pending→resolved; a retry after success fails with
        MergeAlreadyResolvedError instead of applying twice.
        """
        request = await self.get(request_id)
        self._ensure_pending(request)

        if await self._repository.get_account(request.primary_user_id) is None:
            raise UserNotFoundError(f"User not found: {request.primary_user_id}")

        unknown = set(resolution.choices) - set(request.conflicts)
        if unknown:
            raise InvalidInputError(
                f"No conflict recorded for: {', '.join(sorted(unknown))}"
            )

        method = get_method(request.auth_method)
        if resolution.bind_method:
            owner = await self._repository.find_account_by_identity(
                method.lookup_methods, request.identifier
            )
            if owner is not None and owner.id != request.primary_user_id:
                raise IdentifierTakenError(
                    f"{method.auth_method} {request.identifier} belongs to another account"
                )

        now = self._clock()

        def merge(account: Account) -> None:
            for field, side in resolution.choices.items():
                if side == MergeSide.SECONDARY:
                    set_field_value(account, field, request.conflicts[field].secondary)
            if resolution.bind_method and account.binding(method.auth_method) is None:
                account.identities.append(
                    IdentityBinding(
                        method=method.auth_method,
                        identifier=request.identifier,
                        verified=method.is_federated,
                        bound_at=now,
                    )
                )
            account.updated_at = now

        try:
            account = await self._repository.complete_merge(
                request.id,
                request.primary_user_id,
                merge,
                resolution=resolution,
                resolved_at=now,
            )
        except DuplicateIdentifierError as exc:
            raise IdentifierTakenError(exc.message) from exc
        if account is None:
            raise MergeAlreadyResolvedError()

        logger.info("Merge request %s resolved into account %s", request.id, account.id)
        return account

    async def reject(self, request_id: str) -> AccountMergeRequest:
        request = await self.get(request_id)
        self._ensure_pending(request)
        changed = await self._repository.transition_merge_request(
            request.id,
            from_status=MergeStatus.PENDING,
            to_status=MergeStatus.REJECTED,
            resolved_at=self._clock(),
        )
        if not changed:
            raise MergeAlreadyResolvedError()
        logger.info("Merge request %s rejected", request.id)
        return await self.get(request.id)

    async def expire_stale(self) -> int:
        """Mark overdue pending requests expired. Optional cron-style cleanup."""
        count = await self._repository.expire_merge_requests(self._clock())
        if count:
            logger.info("Expired %d stale merge requests", count)
        return count

    @staticmethod
    def _ensure_pending(request: AccountMergeRequest) -> None:
        if request.status == MergeStatus.EXPIRED:
            raise MergeExpiredError()
        if request.status != MergeStatus.PENDING:
            raise MergeAlreadyResolvedError(f"Merge request already {request.status}")
