"""Abstract RBAC collaborator.

The engine only needs three things from a role system: the name of the
default role, a way to look a role up by name, and a way to assign it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel


class Role(BaseModel):
    id: str
    name: str
    is_system: bool = False


class RbacProvider(ABC):
    @abstractmethod
    async def get_default_role_name(self) -> str:
        """Name of the role every non-bootstrap account receives."""
        ...

    @abstractmethod
    async def find_role_by_name(self, name: str) -> Role | None: ...

    @abstractmethod
    async def assign_role(self, account_id: str, role_id: str) -> None: ...
