"""Engine configuration, loaded from YAML with environment overrides.

Provider credentials are handed to each normalizer at construction; nothing in
the engine reads the environment after ``Settings.load`` returns.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

DEFAULT_DB = Path.cwd() / ".multiauth" / "accounts.db"


class CodeSettings(BaseModel):
    ttl_seconds: int = 600
    rate_limit_window_seconds: int = 60
    rate_limit_max: int = 3
    length: int = 6


class MfaPolicy(BaseModel):
    backup_code_count: int = 10
    backup_code_length: int = 8


class ProviderSettings(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    timeout_seconds: float = 10.0
    scopes: list[str] = Field(default_factory=list)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class Settings(BaseModel):
    database_path: Path = DEFAULT_DB
    codes: CodeSettings = Field(default_factory=CodeSettings)
    mfa: MfaPolicy = Field(default_factory=MfaPolicy)
    merge_ttl_hours: int = 24
    super_admin_role: str = "super_admin"
    default_role: str = "user"
    password_rounds: int = 12
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Path) -> Settings:
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)

    @classmethod
    def load(cls, path: Path | None = None, env: dict[str, str] | None = None) -> Settings:
        """Read ``path`` if given, then overlay environment variables."""
        settings = cls.from_yaml(path) if path else cls()
        env = os.environ if env is None else env

        if env.get("MULTIAUTH_DB"):
            settings.database_path = Path(env["MULTIAUTH_DB"])

        github = settings.providers.get("github", ProviderSettings(scopes=["user:email"]))
        if env.get("GITHUB_CLIENT_ID"):
            github.client_id = env["GITHUB_CLIENT_ID"]
        if env.get("GITHUB_CLIENT_SECRET"):
            github.client_secret = env["GITHUB_CLIENT_SECRET"]
        if env.get("GITHUB_REDIRECT_URI"):
            github.redirect_uri = env["GITHUB_REDIRECT_URI"]
        settings.providers["github"] = github
        return settings

    def provider(self, name: str) -> ProviderSettings:
        return self.providers.get(name, ProviderSettings())
