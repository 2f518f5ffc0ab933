"""Desired-state providers."""

from celine.usersync.providers.base import DesiredStateProvider
from celine.usersync.providers.file import FileProvider
from celine.usersync.providers.nextcloud import NextcloudTableReader
from celine.usersync.providers.table import TableProvider, TableReader

__all__ = [
    "DesiredStateProvider",
    "FileProvider",
    "NextcloudTableReader",
    "TableProvider",
    "TableReader",
]
