"""GitHub provider normalizer — OAuth code exchange plus profile and email fetch."""

from __future__ import annotations

import logging
import secrets
from urllib.parse import urlencode

import httpx

from multiauth.config import ProviderSettings
from multiauth.errors import (
    InvalidInputError,
    ProviderExchangeFailedError,
    ProviderNotConfiguredError,
)
from multiauth.models.identity import AuthMethod
from multiauth.providers.base import ExternalIdentity, ProviderNormalizer, pick_primary_email

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"
API_URL = "https://api.github.com"
DEFAULT_SCOPES = ["user:email"]


class GitHubNormalizer(ProviderNormalizer):
    """Turns a GitHub OAuth callback code into an ExternalIdentity.

    The httpx client is the network collaborator. Pass one in to share
    connection pools or to mock transport in tests; otherwise a short-lived
    client is opened per exchange.
    """

    provider_name = "github"
    auth_method = AuthMethod.GITHUB

    def __init__(
        self, settings: ProviderSettings, client: httpx.AsyncClient | None = None
    ) -> None:
        self._settings = settings
        self._client = client

    @property
    def scopes(self) -> list[str]:
        return self._settings.scopes or DEFAULT_SCOPES

    def authorization_url(self, state: str | None = None) -> tuple[str, str]:
        """Build the URL the user is redirected to. Returns (url, state)."""
        if not self._settings.client_id:
            raise ProviderNotConfiguredError("GitHub OAuth client id is not configured")
        state = state or secrets.token_urlsafe(24)
        params = {
            "client_id": self._settings.client_id,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        if self._settings.redirect_uri:
            params["redirect_uri"] = self._settings.redirect_uri
        return f"{AUTHORIZE_URL}?{urlencode(params)}", state

    async def normalize(self, code: str) -> ExternalIdentity:
        if not self._settings.configured:
            raise ProviderNotConfiguredError("GitHub OAuth credentials are not configured")
        if not code or not code.strip():
            raise InvalidInputError("GitHub authorization code is required")

        try:
            if self._client is not None:
                user, emails = await self._fetch(self._client, code.strip())
            else:
                async with httpx.AsyncClient(
                    timeout=self._settings.timeout_seconds,
                    headers={"User-Agent": "multiauth-engine/0.1"},
                ) as client:
                    user, emails = await self._fetch(client, code.strip())
        except httpx.TimeoutException as exc:
            raise ProviderExchangeFailedError(self.provider_name, f"request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderExchangeFailedError(self.provider_name, str(exc)) from exc
        except ValueError as exc:
            raise ProviderExchangeFailedError(self.provider_name, "malformed response") from exc

        if "id" not in user:
            raise ProviderExchangeFailedError(self.provider_name, "profile has no id")

        identity = ExternalIdentity(
            provider_name=self.provider_name,
            provider_id=str(user["id"]),
            primary_email=pick_primary_email(emails),
            display_name=user.get("name") or None,
            avatar_url=user.get("avatar_url"),
            raw_metadata={
                "username": user.get("login"),
                "profile_url": user.get("html_url"),
                "scopes": self.scopes,
                "emails": [e.get("email") for e in emails if e.get("email")],
            },
        )
        logger.info("GitHub identity %s normalized", identity.provider_id)
        return identity

    async def _fetch(self, client: httpx.AsyncClient, code: str) -> tuple[dict, list[dict]]:
        token = await self._exchange_code(client, code)
        user = await self._get_json(client, "/user", token)
        emails = await self._get_json(client, "/user/emails", token)
        if not isinstance(user, dict) or not isinstance(emails, list):
            raise ProviderExchangeFailedError(self.provider_name, "unexpected profile payload")
        return user, emails

    async def _exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        payload = {
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "code": code,
        }
        if self._settings.redirect_uri:
            payload["redirect_uri"] = self._settings.redirect_uri
        resp = await client.post(
            TOKEN_URL,
            json=payload,
            headers={"Accept": "application/json"},
            timeout=self._settings.timeout_seconds,
        )
        if resp.status_code != 200:
            raise ProviderExchangeFailedError(
                self.provider_name, f"token exchange failed: HTTP {resp.status_code}"
            )
        data = resp.json()
        if data.get("error"):
            raise ProviderExchangeFailedError(
                self.provider_name, data.get("error_description") or data["error"]
            )
        token = data.get("access_token")
        if not token:
            raise ProviderExchangeFailedError(self.provider_name, "no access token returned")
        return token

    async def _get_json(self, client: httpx.AsyncClient, path: str, token: str) -> dict | list:
        resp = await client.get(
            f"{API_URL}{path}",
            headers={
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github.v3+json",
            },
            timeout=self._settings.timeout_seconds,
        )
        if resp.status_code != 200:
            raise ProviderExchangeFailedError(
                self.provider_name, f"GET {path} failed: HTTP {resp.status_code}"
            )
        return resp.json()
