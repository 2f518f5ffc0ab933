"""Pydantic models for the run configuration document.

Example (JSON or YAML):
    {
      "keycloak_url": "https://sso.example.org",
      "auth_realm": "master",
      "auth_username": "admin",
      "auth_password": "${KEYCLOAK_ADMIN_PASSWORD}",
      "auth_client_id": "admin-cli",
      "realm": "asta",
      "delete_users": false,
      "users_provider": {"type": "file", "path": "users.json"}
    }
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, Field, model_validator

# Pattern for ${VAR} and ${VAR:-default} interpolation
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:-([^}]*))?\}")

# Role mappings Keycloak attaches to every user on its own.
BUILTIN_ROLES = ("offline_access", "uma_authorization")


def _resolve_env_str(s: str) -> str:
    """Resolve environment variable placeholders in a string."""
    def repl(m: re.Match[str]) -> str:
        var = m.group(1)
        default = m.group(3)
        val = os.getenv(var)
        if val is None or val == "":
            return default if default is not None else ""
        return val

    # Resolve repeatedly until stable (handles nested defaults)
    prev = None
    cur = s
    for _ in range(5):
        if cur == prev:
            break
        prev = cur
        cur = _ENV_PATTERN.sub(repl, cur)
    return cur


def _resolve_env(value: Any) -> Any:
    """Recursively resolve environment variables in a data structure."""
    if isinstance(value, str):
        return _resolve_env_str(value)
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    return value


class TableColumns(BaseModel):
    """Column titles of the user table, mapped to record fields."""

    username: str = "username"
    email: str = "email"
    first_name: str = "firstName"
    last_name: str = "lastName"
    enabled: str = "enabled"
    roles: str = "roles"
    role_group: str | None = Field(
        default=None,
        description=(
            "Column naming the group a row belongs to; each role R is also granted"
            " as '<group> - R', plus the group itself"
        ),
    )


class NextcloudConnection(BaseModel):
    """Credentials for a Nextcloud instance."""

    url: str
    username: str
    password: str


class FileSource(BaseModel):
    """Desired state read from a static JSON or YAML document."""

    type: Literal["file"] = "file"
    path: Path


class NextcloudTableSource(BaseModel):
    """Desired state read from a Nextcloud Tables table."""

    type: Literal["nextcloud_table"] = "nextcloud_table"
    nextcloud: NextcloudConnection
    table_id: int
    columns: TableColumns = Field(default_factory=TableColumns)
    email_domain: str | None = Field(
        default=None,
        description="Derive '<username>@<domain>' when the email cell is empty",
    )


UsersProvider = Annotated[
    Union[FileSource, NextcloudTableSource], Field(discriminator="type")
]


class RunConfiguration(BaseModel):
    """Connection details and reconciliation policy for a single run."""

    keycloak_url: str = Field(..., description="Keycloak base URL")
    auth_realm: str = Field(..., description="Realm the admin user authenticates against")
    auth_username: str
    auth_password: str
    auth_client_id: str
    auth_client_secret: str | None = Field(
        default=None,
        description="Client secret for confidential clients (optional)",
    )
    realm: str = Field(..., description="Managed realm")

    delete_users: bool = Field(
        default=False,
        description="Delete users missing from the desired state instead of disabling them",
    )
    create_missing_roles: bool = Field(
        default=False,
        description="Create realm roles that a grant refers to but Keycloak lacks",
    )
    ignored_roles: list[str] | None = Field(
        default=None,
        description="Role names excluded from diffing (defaults to Keycloak's implicit roles)",
    )
    protected_users: list[str] = Field(
        default_factory=list,
        description="Usernames that are never disabled or deleted",
    )

    users_provider: UsersProvider | None = None

    @model_validator(mode="after")
    def default_ignored_roles(self) -> "RunConfiguration":
        if self.ignored_roles is None:
            self.ignored_roles = [*BUILTIN_ROLES, f"default-roles-{self.realm}"]
        return self

    @classmethod
    def from_file(cls, path: str | Path) -> "RunConfiguration":
        """Load configuration from a JSON/YAML file with env var interpolation."""
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        raw = yaml.safe_load(p.read_text())
        if not isinstance(raw, dict):
            raise ValueError(f"Config file must be a mapping: {path}")

        config = cls.model_validate(_resolve_env(raw))

        # Relative provider paths are relative to the config file
        provider = config.users_provider
        if isinstance(provider, FileSource) and not provider.path.is_absolute():
            provider.path = p.parent / provider.path
        return config

    @property
    def base_url(self) -> str:
        return self.keycloak_url.rstrip("/")

    @property
    def token_url(self) -> str:
        """Token endpoint of the authentication realm."""
        return f"{self.base_url}/realms/{self.auth_realm}/protocol/openid-connect/token"

    def admin_url(self, realm: str | None = None) -> str:
        """Admin API URL for a realm (the managed realm by default)."""
        return f"{self.base_url}/admin/realms/{realm or self.realm}"

    def protected_usernames(self) -> set[str]:
        """Usernames the diff must never remove."""
        protected = set(self.protected_users)
        if self.auth_realm == self.realm:
            protected.add(self.auth_username)
        return protected
