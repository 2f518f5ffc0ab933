"""celine-usersync CLI - Main entrypoint.

Usage:
    celine-usersync sync -c config.json -u users.json
    celine-usersync status -c config.json
"""

from __future__ import annotations

from celine.usersync.cli.commands import app


def create_app() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    create_app()
