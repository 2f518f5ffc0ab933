"""Reconciler: applies a plan to Keycloak and reports every outcome.

- Operations of one username run sequentially, in plan order, on one worker.
- Different usernames are spread over a bounded pool of workers.
- Throttled calls are retried with bounded exponential backoff.
- Any other failure is recorded and the run moves on; nothing is rolled back.
- Lost authentication or an external cancellation stops the run: nothing new
  is started, in-flight operations finish, and the rest is reported skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from celine.usersync.engine.plan import (
    Create,
    EnableOrDisable,
    GrantRole,
    ReconciliationOperation,
    ReconciliationPlan,
    Remove,
    RemovalKind,
    RevokeRole,
    UpdateAttributes,
)
from celine.usersync.engine.report import OperationOutcome, OutcomeStatus, ReportSlots, RunReport
from celine.usersync.errors import OperationRejected, OperationThrottled, RunAborted
from celine.usersync.keycloak.client import (
    KeycloakAdminClient,
    KeycloakAuthError,
    KeycloakConflictError,
    KeycloakError,
    KeycloakNotFoundError,
    KeycloakThrottledError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for throttled operations."""

    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 10.0

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = self.backoff_base * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.backoff_max)


class Reconciler:
    """Applies reconciliation plans against one realm."""

    def __init__(
        self,
        client: KeycloakAdminClient,
        realm: str,
        *,
        max_workers: int = 4,
        retry: RetryPolicy | None = None,
        create_missing_roles: bool = False,
        cancel_event: asyncio.Event | None = None,
    ):
        self._client = client
        self._realm = realm
        self._max_workers = max_workers
        self._retry = retry or RetryPolicy()
        self._create_missing_roles = create_missing_roles
        self._cancel_event = cancel_event
        self._aborted: RunAborted | None = None

    async def apply(self, plan: ReconciliationPlan) -> RunReport:
        """Apply every operation of the plan and return the run report."""
        self._aborted = None
        slots = ReportSlots(plan)

        queue: asyncio.Queue[list[tuple[int, ReconciliationOperation]]] = asyncio.Queue()
        for group in plan.groups().values():
            queue.put_nowait(group)

        async def worker() -> None:
            while not self._should_stop():
                try:
                    group = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._apply_group(group, slots)

        workers = min(self._max_workers, queue.qsize())
        await asyncio.gather(*(worker() for _ in range(workers)))

        report = slots.build(self._aborted)
        if report.aborted:
            logger.error("Run aborted: %s", report.aborted)
        return report

    def _should_stop(self) -> bool:
        if self._aborted is None and self._cancel_event is not None and self._cancel_event.is_set():
            self._aborted = RunAborted("run cancelled")
        return self._aborted is not None

    async def _apply_group(
        self,
        group: list[tuple[int, ReconciliationOperation]],
        slots: ReportSlots,
    ) -> None:
        """Run one username's operations in order."""
        user_missing = False

        for index, op in group:
            if self._should_stop():
                # Left empty: reported as run-aborted
                return

            if user_missing:
                slots.record(index, OperationOutcome.skipped(op, "user-not-created"))
                continue

            outcome = await self._apply_operation(op)
            slots.record(index, outcome)

            if isinstance(op, Create) and outcome.status is OutcomeStatus.FAILED:
                user_missing = True

    async def _apply_operation(self, op: ReconciliationOperation) -> OperationOutcome:
        """Apply one operation, retrying while it is throttled."""
        for attempt in range(1, self._retry.max_attempts + 1):
            try:
                await self._dispatch(op)
            except KeycloakThrottledError as e:
                if attempt == self._retry.max_attempts:
                    logger.error("Giving up on %s after %d attempts", op.describe(), attempt)
                    return OperationOutcome.failed(
                        op, OperationThrottled(str(e), e.status_code), attempt
                    )
                delay = self._retry.delay(attempt, e.retry_after)
                logger.warning(
                    "Throttled on %s (attempt %d/%d), retrying in %.2fs",
                    op.describe(), attempt, self._retry.max_attempts, delay,
                )
                await asyncio.sleep(delay)
            except KeycloakConflictError as e:
                if isinstance(op, Create):
                    logger.warning("User already exists (race condition?): %s", op.username)
                    return OperationOutcome.skipped(op, "already-exists", attempt)
                return OperationOutcome.failed(op, OperationRejected(str(e), e.status_code), attempt)
            except KeycloakNotFoundError as e:
                if isinstance(op, Remove) and op.kind is RemovalKind.DELETE:
                    return OperationOutcome.skipped(op, "already-absent", attempt)
                return OperationOutcome.failed(op, OperationRejected(str(e), e.status_code), attempt)
            except KeycloakAuthError as e:
                self._aborted = RunAborted(f"authentication lost: {e}")
                return OperationOutcome.failed(op, OperationRejected(str(e), e.status_code), attempt)
            except KeycloakError as e:
                logger.error("Failed %s: %s", op.describe(), e)
                return OperationOutcome.failed(op, OperationRejected(str(e), e.status_code), attempt)
            else:
                logger.debug("Applied %s", op.describe())
                return OperationOutcome.applied(op, attempt)

        raise AssertionError("unreachable: retry loop always returns")

    async def _dispatch(self, op: ReconciliationOperation) -> None:
        client = self._client
        realm = self._realm

        if isinstance(op, Create):
            await client.create_user(realm, op.record)
        elif isinstance(op, UpdateAttributes):
            await client.update_user(realm, op.username, op.fields)
        elif isinstance(op, EnableOrDisable):
            await client.set_enabled(realm, op.username, op.enabled)
        elif isinstance(op, GrantRole):
            await client.grant_role(
                realm, op.username, op.role, create_missing=self._create_missing_roles
            )
        elif isinstance(op, RevokeRole):
            await client.revoke_role(realm, op.username, op.role)
        elif isinstance(op, Remove):
            if op.kind is RemovalKind.DELETE:
                await client.delete_user(realm, op.username)
            else:
                await client.set_enabled(realm, op.username, False)
        else:
            raise TypeError(f"Unknown operation: {op!r}")
