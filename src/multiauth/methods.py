"""Identity method capabilities — one object per auth method.

Everything that differs between auth methods (identifier normalization, which
account field the identifier fills, whether proof of possession is required,
which delivery channel carries codes) lives here. The rest of the engine asks
``get_method(auth_method)`` instead of branching on the enum.
"""

from __future__ import annotations

import re

from multiauth.errors import InvalidInputError
from multiauth.models.identity import AuthMethod

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_STRIP_RE = re.compile(r"[\s\-().]")
_PHONE_RE = re.compile(r"^\+?\d{10,15}$")


class IdentityMethod:
    """Base capability. Subclasses override ``normalize``."""

    field: str = ""
    label: str = ""
    requires_verification: bool = False
    delivery_channel: str | None = None
    is_federated: bool = False

    def __init__(self, auth_method: AuthMethod) -> None:
        self.auth_method = auth_method

    def normalize(self, identifier: str) -> str:
        value = (identifier or "").strip()
        if not value:
            raise InvalidInputError(f"{self.auth_method} identifier must not be empty")
        return value

    @property
    def lookup_methods(self) -> list[AuthMethod]:
        """Methods whose identifiers live in the same account field."""
        return [m.auth_method for m in _METHODS.values() if m.field == self.field]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.auth_method})"


class EmailMethod(IdentityMethod):
    field = "email"
    label = "Email"
    delivery_channel = "email"

    def normalize(self, identifier: str) -> str:
        value = super().normalize(identifier).lower()
        if not _EMAIL_RE.match(value):
            raise InvalidInputError(f"Malformed email address: {identifier!r}")
        return value


class PhoneMethod(IdentityMethod):
    """Phone number proven through a messenger bot (WhatsApp, Telegram)."""

    field = "phone"
    requires_verification = True

    def __init__(self, auth_method: AuthMethod, channel: str, label: str) -> None:
        super().__init__(auth_method)
        self.delivery_channel = channel
        self.label = label

    def normalize(self, identifier: str) -> str:
        value = _PHONE_STRIP_RE.sub("", super().normalize(identifier))
        if not _PHONE_RE.match(value):
            raise InvalidInputError(f"Malformed phone number: {identifier!r}")
        return value


class ProviderMethod(IdentityMethod):
    """External identity provider; the identifier is the provider's user id."""

    is_federated = True

    def __init__(
        self, auth_method: AuthMethod, field: str, label: str, numeric: bool = False
    ) -> None:
        super().__init__(auth_method)
        self.field = field
        self.label = label
        self._numeric = numeric

    def normalize(self, identifier: str) -> str:
        value = super().normalize(str(identifier) if identifier is not None else "")
        if self._numeric and not value.isdigit():
            raise InvalidInputError(f"{self.auth_method} id must be numeric: {identifier!r}")
        return value


_METHODS: dict[AuthMethod, IdentityMethod] = {
    AuthMethod.EMAIL: EmailMethod(AuthMethod.EMAIL),
    AuthMethod.PHONE_WHATSAPP: PhoneMethod(
        AuthMethod.PHONE_WHATSAPP, channel="whatsapp", label="Phone via WhatsApp"
    ),
    AuthMethod.PHONE_TELEGRAM: PhoneMethod(
        AuthMethod.PHONE_TELEGRAM, channel="telegram", label="Phone via Telegram"
    ),
    AuthMethod.GITHUB: ProviderMethod(AuthMethod.GITHUB, "github_id", "GitHub", numeric=True),
    AuthMethod.GOSUSLUGI: ProviderMethod(AuthMethod.GOSUSLUGI, "gosuslugi_id", "Gosuslugi"),
    AuthMethod.VKONTAKTE: ProviderMethod(AuthMethod.VKONTAKTE, "vkontakte_id", "VKontakte"),
}


def get_method(auth_method: AuthMethod | str) -> IdentityMethod:
    """Return the capability for an auth method, accepting its string value."""
    try:
        return _METHODS[AuthMethod(auth_method)]
    except ValueError:
        raise InvalidInputError(f"Unknown auth method: {auth_method!r}") from None


def all_methods() -> list[IdentityMethod]:
    return list(_METHODS.values())


def methods_for_field(field: str) -> list[IdentityMethod]:
    return [m for m in _METHODS.values() if m.field == field]
