"""Role assignment for newly created accounts."""

from __future__ import annotations

import logging

from multiauth.models.identity import Account
from multiauth.rbac.base import RbacProvider, Role
from multiauth.storage.base import IdentityRepository

logger = logging.getLogger(__name__)


class RoleAssignmentBridge:
    """Gives a fresh account its initial role.

    The very first account in the system becomes super admin; the default
    role is never consulted for it. A missing role is logged and skipped so
    account creation still succeeds.
    """

    def __init__(
        self,
        repository: IdentityRepository,
        rbac: RbacProvider,
        super_admin_role: str = "super_admin",
    ) -> None:
        self._repository = repository
        self._rbac = rbac
        self._super_admin_role = super_admin_role

    async def assign_initial_role(self, account: Account) -> Role | None:
        if await self._repository.count_accounts() == 1:
            role_name = self._super_admin_role
            logger.info("Account %s is the first account; granting %s", account.id, role_name)
        else:
            role_name = await self._rbac.get_default_role_name()

        role = await self._rbac.find_role_by_name(role_name)
        if role is None:
            logger.warning("Role %r not found; account %s has no role", role_name, account.id)
            return None

        await self._rbac.assign_role(account.id, role.id)
        logger.debug("Assigned role %s to account %s", role.name, account.id)
        return role
