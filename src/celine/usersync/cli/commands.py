"""User sync CLI commands.

Commands:
    celine-usersync sync -c <config> [-u <users file>] [--dry-run]
    celine-usersync status -c <config>
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError

from celine.usersync.config import RunConfiguration
from celine.usersync.errors import (
    ObservedStateUnavailable,
    RunAborted,
    SourceMalformed,
    SourceUnavailable,
)
from celine.usersync.keycloak import KeycloakAdminClient, KeycloakAuthError, KeycloakError
from celine.usersync.logs import configure_logging
from celine.usersync.providers import DesiredStateProvider
from celine.usersync.settings import UserSyncSettings
from celine.usersync.sync import SyncResult, build_provider, fetch_observed, run_sync

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="celine-usersync",
    help="Reconcile Keycloak users and realm roles with a declared desired state",
    add_completion=False,
)

ConfigOption = Annotated[
    Path,
    typer.Option(
        "--config",
        "-c",
        help="Path to the run configuration (JSON or YAML)",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable verbose output"),
]


def _load_settings(verbose: bool) -> UserSyncSettings:
    settings = UserSyncSettings()
    if verbose:
        settings = settings.with_overrides(log_level="DEBUG")
    configure_logging(settings.log_level, json_format=settings.log_json)
    return settings


def _load_config(config_path: Path) -> RunConfiguration:
    try:
        return RunConfiguration.from_file(config_path)
    except (OSError, ValueError, ValidationError) as e:
        typer.secho(f"Error loading config: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@app.command("sync")
def sync(
    config_path: ConfigOption,
    user_file: Annotated[
        Optional[Path],
        typer.Option(
            "--users",
            "-u",
            help="Desired users file (overrides 'users_provider' from the config)",
            dir_okay=False,
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be done without making changes"
        ),
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """Sync Keycloak users and roles to match the desired state.

    Exits with 0 when the run completed, even if single operations failed,
    and with 1 when the run was aborted or could not start.

    Example:
        celine-usersync sync -c config.json -u users.json --dry-run
    """
    settings = _load_settings(verbose)
    config = _load_config(config_path)

    try:
        provider = build_provider(config, settings, user_file)
    except ValueError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo(f"Syncing users to Keycloak: {config.base_url} realm={config.realm}")

    try:
        result = asyncio.run(_async_sync(config, settings, provider, dry_run))
    except (SourceUnavailable, SourceMalformed) as e:
        typer.secho(f"Desired state rejected: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except ObservedStateUnavailable as e:
        typer.secho(f"Cannot read Keycloak state: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except KeycloakAuthError as e:
        typer.secho(f"Authentication failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except KeycloakError as e:
        typer.secho(f"Keycloak error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except RunAborted as e:
        typer.secho(f"Run aborted: {e}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(1)

    typer.echo(
        f"Desired: {len(result.desired)} users, observed: {len(result.observed)} users"
    )
    typer.echo("\n" + result.plan.summary())

    if result.report is None:
        if dry_run and result.plan.has_changes:
            typer.secho("\n[DRY RUN] No changes applied", fg=typer.colors.YELLOW)
        return

    report = result.report
    colour = typer.colors.GREEN if report.success else typer.colors.YELLOW
    typer.secho("\n" + report.summary(), fg=colour if report.completed else typer.colors.RED)

    if not report.completed:
        raise typer.Exit(1)


async def _async_sync(
    config: RunConfiguration,
    settings: UserSyncSettings,
    provider: DesiredStateProvider,
    dry_run: bool,
) -> SyncResult:
    """Run the sync with SIGINT/SIGTERM wired to cooperative cancellation."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, cancel_event.set)

    try:
        return await run_sync(
            config, settings, provider, dry_run=dry_run, cancel_event=cancel_event
        )
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


@app.command("status")
def status(
    config_path: ConfigOption,
    verbose: VerboseOption = False,
) -> None:
    """Show the users and realm roles currently in Keycloak.

    Example:
        celine-usersync status -c config.json
    """
    settings = _load_settings(verbose)
    config = _load_config(config_path)

    typer.echo(f"Keycloak: {config.base_url} realm={config.realm}")

    try:
        asyncio.run(_async_status(config, settings))
    except ObservedStateUnavailable as e:
        typer.secho(f"Cannot read Keycloak state: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except KeycloakAuthError as e:
        typer.secho(f"Authentication failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except KeycloakError as e:
        typer.secho(f"Keycloak error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


async def _async_status(config: RunConfiguration, settings: UserSyncSettings) -> None:
    """Print the observed snapshot."""
    async with KeycloakAdminClient(config, timeout=settings.timeout) as client:
        await client.authenticate()
        observed = await fetch_observed(client, config, settings)

    typer.echo(f"\nUsers ({len(observed)}):")
    for username in sorted(observed):
        record = observed[username]
        name = " ".join(p for p in (record.first_name, record.last_name) if p)
        flag = "" if record.enabled else " [disabled]"
        typer.echo(
            f"  - {username}"
            + (f" ({name})" if name else "")
            + (f" <{record.email}>" if record.email else "")
            + flag
        )
        if username in observed.partial:
            typer.secho("      roles: unavailable", fg=typer.colors.YELLOW)
        elif record.roles:
            typer.echo(f"      roles: {', '.join(sorted(record.roles))}")
