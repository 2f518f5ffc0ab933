"""Desired state from an external table (one user per row).

Columns are mapped to record fields by title, see ``TableColumns``. Blank
username cells mark separator rows and are skipped. Several rows for the same
username merge their roles (one row per function a person holds). With a
``role_group`` column, roles are also granted qualified by the row's group.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from celine.usersync.config import TableColumns
from celine.usersync.errors import SourceMalformed
from celine.usersync.models import UserRecord, UserSnapshot
from celine.usersync.providers.base import parse_record

logger = logging.getLogger(__name__)


class TableReader(Protocol):
    """Reads the rows of a table as ``{column title: cell value}`` mappings."""

    async def read_rows(self) -> list[dict[str, Any]]:
        ...


def _split_roles(cell: Any) -> Any:
    # Text columns carry comma separated role names
    if isinstance(cell, str):
        return [part.strip() for part in cell.split(",") if part.strip()]
    return cell


def _grouped_roles(roles: Any, group: Any) -> Any:
    """Add '<group> - <role>' for every role, and the group itself."""
    if roles is None:
        roles = []
    if not isinstance(group, str) or not group.strip() or not isinstance(roles, list):
        return roles
    group = group.strip()
    return [*roles, *(f"{group} - {role}" for role in roles), group]


class TableProvider:
    """Maps table rows to desired user records."""

    def __init__(
        self,
        reader: TableReader,
        columns: TableColumns | None = None,
        email_domain: str | None = None,
    ):
        self._reader = reader
        self._columns = columns or TableColumns()
        self._email_domain = email_domain

    async def fetch_desired(self) -> UserSnapshot:
        rows = await self._reader.read_rows()
        snapshot = self.parse_rows(rows)
        logger.info("Loaded %d desired users from %d table rows", len(snapshot), len(rows))
        return snapshot

    def parse_rows(self, rows: list[dict[str, Any]]) -> UserSnapshot:
        """Turn table rows into a desired snapshot."""
        snapshot = UserSnapshot()
        cols = self._columns

        for index, row in enumerate(rows, start=1):
            where = f"table row {index}"
            username = row.get(cols.username)

            if username is None or (isinstance(username, str) and not username.strip()):
                logger.warning("Skipping %s: empty username", where)
                continue

            entry: dict[str, Any] = {
                "username": username,
                "email": row.get(cols.email),
                "first_name": row.get(cols.first_name),
                "last_name": row.get(cols.last_name),
                "roles": _split_roles(row.get(cols.roles)),
            }
            if cols.role_group is not None:
                entry["roles"] = _grouped_roles(entry["roles"], row.get(cols.role_group))
            enabled = row.get(cols.enabled)
            if enabled is not None:
                entry["enabled"] = enabled

            if self._email_domain and isinstance(username, str):
                email = entry["email"]
                if email is None or (isinstance(email, str) and not email.strip()):
                    entry["email"] = f"{username.strip()}@{self._email_domain}"

            record = parse_record(entry, where)
            existing = snapshot.users.get(record.username)
            if existing is not None:
                record = self._merge(existing, record, where)
            snapshot.users[record.username] = record

        return snapshot

    @staticmethod
    def _merge(existing: UserRecord, record: UserRecord, where: str) -> UserRecord:
        """Combine two rows of the same user; their attributes must agree."""
        if (
            existing.attributes() != record.attributes()
            or existing.enabled != record.enabled
        ):
            raise SourceMalformed(
                f"{where}: conflicting attributes for repeated username {record.username!r}"
            )
        return existing.model_copy(update={"roles": existing.roles | record.roles})
