"""Merge conflicts and account merge requests."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from multiauth.models.identity import AuthMethod


class MergeStatus(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class MergeSide(StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class FieldConflict(BaseModel):
    """Two competing values for one account field."""

    primary: str | None
    secondary: str | None


MergeConflicts = dict[str, FieldConflict]


class MergeResolution(BaseModel):
    """Caller's per-field decision. Fields left out keep the primary value."""

    choices: dict[str, MergeSide] = Field(default_factory=dict)
    bind_method: bool = True


class AccountMergeRequest(BaseModel):
    """An unresolved identity collision awaiting a decision.

    ``pending`` is the only initial state. A pending request past its
    ``expires_at`` is treated as ``expired`` on access.
    """

    id: str
    primary_user_id: str
    secondary_user_id: str  # same as primary until a second account exists
    auth_method: AuthMethod
    identifier: str
    conflicts: MergeConflicts
    status: MergeStatus = MergeStatus.PENDING
    resolution: MergeResolution | None = None
    expires_at: datetime
    resolved_at: datetime | None = None
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.status == MergeStatus.EXPIRED or (
            self.status == MergeStatus.PENDING and now > self.expires_at
        )
