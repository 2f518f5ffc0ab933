"""User records and snapshots.

Desired and observed state share the same record shape so they can be diffed
structurally. A snapshot maps usernames to records and is rebuilt on every run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator

from celine.usersync.errors import PartialObservation

# Attributes compared by the diff engine, mapped to their Keycloak field names.
ATTRIBUTE_FIELDS: dict[str, str] = {
    "email": "email",
    "first_name": "firstName",
    "last_name": "lastName",
}


class UserRecord(BaseModel):
    """A single user account with its realm roles."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    username: StrictStr = Field(..., description="Unique, case-sensitive username")
    email: StrictStr | None = Field(default=None)
    first_name: StrictStr | None = Field(default=None, alias="firstName")
    last_name: StrictStr | None = Field(default=None, alias="lastName")
    enabled: StrictBool = Field(default=True)
    roles: frozenset[StrictStr] = Field(default_factory=frozenset)

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        """Trim surrounding whitespace; the result must not be empty."""
        v = v.strip()
        if not v:
            raise ValueError("username must not be empty")
        return v

    @field_validator("email", "first_name", "last_name")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("roles", mode="before")
    @classmethod
    def roles_default(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            # A bare string would otherwise be split into characters
            raise ValueError("roles must be a list of strings")
        return v

    def attributes(self) -> dict[str, str | None]:
        """Return the managed non-role attributes keyed by field name."""
        return {name: getattr(self, name) for name in ATTRIBUTE_FIELDS}


@dataclass
class UserSnapshot:
    """Mapping of username to record, in insertion order.

    ``partial`` holds users whose role mappings could not be observed; it is
    always empty for desired-state snapshots.
    """

    users: dict[str, UserRecord] = field(default_factory=dict)
    partial: dict[str, PartialObservation] = field(default_factory=dict)

    def __contains__(self, username: object) -> bool:
        return username in self.users

    def __getitem__(self, username: str) -> UserRecord:
        return self.users[username]

    def __iter__(self) -> Iterator[str]:
        return iter(self.users)

    def __len__(self) -> int:
        return len(self.users)

    def roles_known(self, username: str) -> bool:
        """Whether the user's role mappings were fully observed."""
        return username not in self.partial
