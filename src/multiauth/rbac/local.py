"""Local RBAC provider backed by SQLite storage.

This is the default provider — roles live in the same database as accounts.
``seed`` creates the two system roles the engine relies on.
"""

from __future__ import annotations

from multiauth.rbac.base import RbacProvider, Role
from multiauth.storage.sqlite import StorageEngine


class LocalRbacProvider(RbacProvider):
    """Resolves and assigns roles from the local SQLite database."""

    def __init__(
        self,
        storage: StorageEngine,
        default_role: str = "user",
        super_admin_role: str = "super_admin",
    ) -> None:
        self._storage = storage
        self._default_role = default_role
        self._super_admin_role = super_admin_role

    async def seed(self) -> None:
        await self._storage.ensure_role(
            role_id=f"role-{self._super_admin_role}", name=self._super_admin_role, is_system=True
        )
        await self._storage.ensure_role(
            role_id=f"role-{self._default_role}", name=self._default_role, is_system=True
        )

    async def get_default_role_name(self) -> str:
        return self._default_role

    async def find_role_by_name(self, name: str) -> Role | None:
        row = await self._storage.get_role_by_name(name)
        if row is None:
            return None
        return Role(id=row["id"], name=row["name"], is_system=bool(row["is_system"]))

    async def assign_role(self, account_id: str, role_id: str) -> None:
        await self._storage.assign_role(account_id, role_id)

    async def roles_for(self, account_id: str) -> list[Role]:
        rows = await self._storage.list_account_roles(account_id)
        return [
            Role(id=row["id"], name=row["name"], is_system=bool(row["is_system"]))
            for row in rows
        ]
