"""One reconciliation run, end to end.

desired state (provider) -> observed state (Keycloak) -> plan -> apply -> report

The desired state is read before anything talks to Keycloak, so a source error
aborts the run before any identity-provider call is made.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from celine.usersync.config import FileSource, NextcloudTableSource, RunConfiguration
from celine.usersync.engine import ReconciliationPlan, Reconciler, RetryPolicy, RunReport, compute_diff
from celine.usersync.errors import RunAborted
from celine.usersync.keycloak import KeycloakAdminClient, SnapshotFetcher
from celine.usersync.models import UserSnapshot
from celine.usersync.providers import (
    DesiredStateProvider,
    FileProvider,
    NextcloudTableReader,
    TableProvider,
)
from celine.usersync.settings import UserSyncSettings

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Everything a run produced."""

    desired: UserSnapshot
    observed: UserSnapshot
    plan: ReconciliationPlan
    report: RunReport | None = None  # None for dry runs and empty plans

    @property
    def completed(self) -> bool:
        return self.report is None or self.report.completed


def build_provider(
    config: RunConfiguration,
    settings: UserSyncSettings,
    user_file: Path | None = None,
) -> DesiredStateProvider:
    """Pick the desired-state provider: an explicit user file wins over config."""
    if user_file is not None:
        return FileProvider(user_file)

    source = config.users_provider
    if isinstance(source, FileSource):
        return FileProvider(source.path)
    if isinstance(source, NextcloudTableSource):
        reader = NextcloudTableReader(
            source.nextcloud, source.table_id, timeout=settings.timeout
        )
        return TableProvider(reader, columns=source.columns, email_domain=source.email_domain)

    raise ValueError("No users provider configured: pass a user file or set 'users_provider'")


async def fetch_observed(
    client: KeycloakAdminClient,
    config: RunConfiguration,
    settings: UserSyncSettings,
) -> UserSnapshot:
    """Fetch the observed snapshot of the managed realm."""
    fetcher = SnapshotFetcher(
        client,
        page_size=settings.page_size,
        max_workers=settings.max_workers,
        ignored_roles=config.ignored_roles or (),
    )
    return await fetcher.fetch_observed(config.realm)


async def run_sync(
    config: RunConfiguration,
    settings: UserSyncSettings,
    provider: DesiredStateProvider,
    *,
    dry_run: bool = False,
    cancel_event: asyncio.Event | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SyncResult:
    """Run a full reconciliation.

    Raises:
        SourceUnavailable, SourceMalformed: desired state unusable (nothing applied).
        ObservedStateUnavailable: user listing failed (nothing applied).
        KeycloakAuthError: initial authentication failed (nothing applied).
        RunAborted: cancelled before the plan was applied.
    """
    desired = await provider.fetch_desired()
    logger.info("Desired state: %d users", len(desired))

    async with KeycloakAdminClient(config, timeout=settings.timeout, transport=transport) as client:
        await client.authenticate()

        observed = await fetch_observed(client, config, settings)
        plan = compute_diff(desired, observed, config)
        logger.info("Plan: %d operations", len(plan))

        if cancel_event is not None and cancel_event.is_set():
            raise RunAborted("run cancelled before applying the plan")

        if dry_run or not plan.has_changes:
            return SyncResult(desired=desired, observed=observed, plan=plan)

        reconciler = Reconciler(
            client,
            config.realm,
            max_workers=settings.max_workers,
            retry=RetryPolicy(
                max_attempts=settings.max_attempts,
                backoff_base=settings.backoff_base,
                backoff_max=settings.backoff_max,
            ),
            create_missing_roles=config.create_missing_roles,
            cancel_event=cancel_event,
        )
        report = await reconciler.apply(plan)
        report.log()

    return SyncResult(desired=desired, observed=observed, plan=plan, report=report)
