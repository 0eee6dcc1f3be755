"""Account, verification code, merge request, and result models."""

from multiauth.models.identity import Account, AuthMethod, IdentityBinding, MfaSettings
from multiauth.models.merge import (
    AccountMergeRequest,
    FieldConflict,
    MergeConflicts,
    MergeResolution,
    MergeSide,
    MergeStatus,
)
from multiauth.models.results import LoginResult, RegistrationResult
from multiauth.models.verification import CodePurpose, VerificationCode

__all__ = [
    "Account",
    "AccountMergeRequest",
    "AuthMethod",
    "CodePurpose",
    "FieldConflict",
    "IdentityBinding",
    "LoginResult",
    "MergeConflicts",
    "MergeResolution",
    "MergeSide",
    "MergeStatus",
    "MfaSettings",
    "RegistrationResult",
    "VerificationCode",
]
