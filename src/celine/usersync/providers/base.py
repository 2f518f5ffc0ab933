"""Desired-state provider interface and shared record validation."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from celine.usersync.errors import SourceMalformed
from celine.usersync.models import UserRecord, UserSnapshot


@runtime_checkable
class DesiredStateProvider(Protocol):
    """Anything that can produce the desired user snapshot for a run."""

    async def fetch_desired(self) -> UserSnapshot:
        """Return the normalized desired state.

        Raises:
            SourceUnavailable: the source could not be read.
            SourceMalformed: the source violates the record schema.
        """
        ...


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "<entry>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_record(entry: Any, where: str) -> UserRecord:
    """Validate one raw entry, converting schema violations to SourceMalformed."""
    if not isinstance(entry, dict):
        raise SourceMalformed(f"{where}: expected a mapping, got {type(entry).__name__}")
    if "username" not in entry or entry["username"] is None:
        raise SourceMalformed(f"{where}: missing username")
    try:
        return UserRecord.model_validate(entry)
    except ValidationError as e:
        raise SourceMalformed(f"{where}: {_describe(e)}") from e


def snapshot_without_duplicates(records: list[UserRecord], source: str) -> UserSnapshot:
    """Build a snapshot, rejecting any username that occurs twice."""
    snapshot = UserSnapshot()
    for record in records:
        if record.username in snapshot:
            raise SourceMalformed(f"{source}: duplicate username {record.username!r}")
        snapshot.users[record.username] = record
    return snapshot
