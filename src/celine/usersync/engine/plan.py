"""Reconciliation operations and the plan that orders them.

Operations for one username form a group that must run sequentially in plan
order (create before grants, revokes before removal). Groups of different
usernames are independent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Union

from celine.usersync.models import UserRecord


class RemovalKind(str, Enum):
    """How a user missing from the desired state is removed."""

    DISABLE = "disable"
    DELETE = "delete"


@dataclass(frozen=True)
class Create:
    """Create a user (without roles; grants follow separately)."""

    record: UserRecord

    @property
    def username(self) -> str:
        return self.record.username

    def describe(self) -> str:
        return f"+ {self.username}"


@dataclass(frozen=True)
class UpdateAttributes:
    """Change non-role attributes of an existing user.

    ``changes`` holds ``(field, new value)`` pairs sorted by field name.
    """

    username: str
    changes: tuple[tuple[str, str | None], ...]

    @property
    def fields(self) -> dict[str, str | None]:
        return dict(self.changes)

    def describe(self) -> str:
        return f"~ {self.username} ({', '.join(name for name, _ in self.changes)})"


@dataclass(frozen=True)
class EnableOrDisable:
    """Flip the enabled flag of an existing, desired user."""

    username: str
    enabled: bool

    def describe(self) -> str:
        return f"~ {self.username} ({'enable' if self.enabled else 'disable'})"


@dataclass(frozen=True)
class GrantRole:
    """Map a realm role to a user."""

    username: str
    role: str

    def describe(self) -> str:
        return f"+ {self.username} <- {self.role}"


@dataclass(frozen=True)
class RevokeRole:
    """Remove a realm role mapping from a user."""

    username: str
    role: str

    def describe(self) -> str:
        return f"- {self.username} <- {self.role}"


@dataclass(frozen=True)
class Remove:
    """Disable or delete a user that is no longer desired."""

    username: str
    kind: RemovalKind

    def describe(self) -> str:
        return f"- {self.username} ({self.kind.value})"


ReconciliationOperation = Union[
    Create, UpdateAttributes, EnableOrDisable, GrantRole, RevokeRole, Remove
]


@dataclass
class ReconciliationPlan:
    """Ordered operations converging the observed state to the desired one."""

    operations: list[ReconciliationOperation] = field(default_factory=list)

    def __iter__(self) -> Iterator[ReconciliationOperation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def has_changes(self) -> bool:
        """Check if there are any changes to apply."""
        return bool(self.operations)

    def groups(self) -> dict[str, list[tuple[int, ReconciliationOperation]]]:
        """Group ``(plan index, operation)`` pairs by username, keeping plan order."""
        grouped: dict[str, list[tuple[int, ReconciliationOperation]]] = {}
        for index, op in enumerate(self.operations):
            grouped.setdefault(op.username, []).append((index, op))
        return grouped

    def of_type(self, kind: type) -> list[ReconciliationOperation]:
        """Return the operations of one variant, in plan order."""
        return [op for op in self.operations if isinstance(op, kind)]

    def summary(self) -> str:
        """Get a human-readable summary of the plan."""
        sections = [
            ("Users to create", Create),
            ("Users to update", UpdateAttributes),
            ("Users to enable/disable", EnableOrDisable),
            ("Roles to grant", GrantRole),
            ("Roles to revoke", RevokeRole),
            ("Users to remove", Remove),
        ]
        lines = []
        for title, kind in sections:
            ops = self.of_type(kind)
            if ops:
                lines.append(f"{title}: {len(ops)}")
                lines.extend(f"  {op.describe()}" for op in ops)

        if not lines:
            lines.append("No changes needed - Keycloak is in sync")

        return "\n".join(lines)
