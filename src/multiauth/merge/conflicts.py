"""Conflict detection between an existing account and an incoming identity.

A field conflicts only when the account already holds a non-empty value that
differs from the incoming one. Empty fields are fill-ins, not conflicts.
"""

from __future__ import annotations

from multiauth.errors import InvalidInputError
from multiauth.methods import get_method, methods_for_field
from multiauth.models.identity import Account, AuthMethod
from multiauth.models.merge import FieldConflict, MergeConflicts

PROFILE_FIELDS = ("first_name", "last_name", "avatar_url")
IDENTITY_FIELDS = ("email", "phone")

# camelCase keys accepted from API payloads
_ALIASES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "avatarUrl": "avatar_url",
}


def incoming_fields(
    auth_method: AuthMethod | str, identifier: str, profile: dict | None = None
) -> dict[str, str]:
    """Every account field an incoming identity would set, normalized.

    The method's own identifier always wins over a profile value for the
    same field.
    """
    method = get_method(auth_method)
    fields = {method.field: method.normalize(identifier)}
    for key, value in (profile or {}).items():
        field = _ALIASES.get(key, key)
        if not value or field in fields:
            continue
        if field in PROFILE_FIELDS:
            fields[field] = str(value).strip()
        elif field in IDENTITY_FIELDS:
            fields[field] = _normalize_identity_value(field, str(value))
    return fields


def _normalize_identity_value(field: str, value: str) -> str:
    method = methods_for_field(field)[0]
    try:
        return method.normalize(value)
    except InvalidInputError:
        return value.strip()


def field_value(account: Account, field: str) -> str | None:
    if field in PROFILE_FIELDS:
        return getattr(account, field)
    for method in methods_for_field(field):
        value = account.identifier_for(method.auth_method)
        if value:
            return value
    return None


def set_field_value(account: Account, field: str, value: str | None) -> None:
    """Overwrite one account field. Identity fields must already be bound."""
    if field in PROFILE_FIELDS:
        setattr(account, field, value)
        return
    for method in methods_for_field(field):
        binding = account.binding(method.auth_method)
        if binding is None:
            continue
        if not value:
            raise InvalidInputError(f"Cannot clear bound identity field {field!r}")
        binding.identifier = method.normalize(value)
        binding.verified = method.is_federated
        return
    raise InvalidInputError(f"Account has no {field!r} to overwrite")


def detect_conflicts(
    existing: Account,
    incoming_method: AuthMethod | str,
    incoming_identifier: str,
    incoming_profile: dict | None = None,
) -> MergeConflicts:
    conflicts: MergeConflicts = {}
    for field, value in incoming_fields(
        incoming_method, incoming_identifier, incoming_profile
    ).items():
        current = field_value(existing, field)
        if not current:
            continue
        if current != value:
            conflicts[field] = FieldConflict(primary=current, secondary=value)
    return conflicts
