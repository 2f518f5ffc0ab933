"""Desired state from a static JSON or YAML document.

Expected structure:
    users:
      - username: alice
        email: alice@example.org
        firstName: Alice
        lastName: Example
        enabled: true
        roles: [admin]

The older keyed form (``{"alice": {"roles": [...], ...}}``) is accepted too.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from pathlib import Path
from typing import Any

import yaml

from celine.usersync.errors import SourceMalformed, SourceUnavailable
from celine.usersync.models import UserSnapshot
from celine.usersync.providers.base import parse_record, snapshot_without_duplicates

logger = logging.getLogger(__name__)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses repeated keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if isinstance(key, Hashable) and key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key {key!r}", key_node.start_mark
                )
            if isinstance(key, Hashable):
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


class FileProvider:
    """Reads the desired users from a file on disk."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def fetch_desired(self) -> UserSnapshot:
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise SourceUnavailable(f"Cannot read user file {self._path}: {e}") from e

        try:
            document = yaml.load(text, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise SourceMalformed(f"Cannot parse user file {self._path}: {e}") from e

        snapshot = self.parse(document, source=str(self._path))
        logger.info("Loaded %d desired users from %s", len(snapshot), self._path)
        return snapshot

    @staticmethod
    def parse(document: Any, source: str = "<document>") -> UserSnapshot:
        """Turn a loaded document into a desired snapshot."""
        if not isinstance(document, dict):
            raise SourceMalformed(f"{source}: document must be a mapping")

        if "users" in document and isinstance(document["users"], list):
            entries = document["users"]
            records = [
                parse_record(entry, f"{source}: users[{i}]")
                for i, entry in enumerate(entries)
            ]
        elif "users" in document:
            raise SourceMalformed(f"{source}: 'users' must be a sequence")
        else:
            records = []
            for key, attrs in document.items():
                if not isinstance(attrs, dict):
                    raise SourceMalformed(f"{source}: entry {key!r} must be a mapping")
                if "username" in attrs and attrs["username"] != key:
                    raise SourceMalformed(
                        f"{source}: entry {key!r} declares a different username"
                    )
                records.append(parse_record({**attrs, "username": key}, f"{source}: {key}"))

        return snapshot_without_duplicates(records, source)
