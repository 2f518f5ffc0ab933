"""Command line interface."""

from celine.usersync.cli.commands import app

__all__ = ["app"]
