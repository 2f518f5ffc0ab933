"""Run report: the outcome of every operation in a plan."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from celine.usersync.engine.plan import ReconciliationOperation, ReconciliationPlan
from celine.usersync.errors import RunAborted

# Reason given to operations never attempted because the run stopped early.
RUN_ABORTED = "run-aborted"


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationOutcome:
    """What happened to a single plan entry."""

    operation: ReconciliationOperation
    status: OutcomeStatus
    reason: str | None = None
    error: Exception | None = None
    attempts: int = 0

    @classmethod
    def applied(cls, operation: ReconciliationOperation, attempts: int = 1) -> "OperationOutcome":
        return cls(operation, OutcomeStatus.APPLIED, attempts=attempts)

    @classmethod
    def skipped(
        cls, operation: ReconciliationOperation, reason: str, attempts: int = 0
    ) -> "OperationOutcome":
        return cls(operation, OutcomeStatus.SKIPPED, reason=reason, attempts=attempts)

    @classmethod
    def failed(
        cls, operation: ReconciliationOperation, error: Exception, attempts: int = 1
    ) -> "OperationOutcome":
        return cls(operation, OutcomeStatus.FAILED, reason=str(error), error=error, attempts=attempts)


@dataclass
class RunReport:
    """Outcomes of a run, one per plan entry and in plan order."""

    outcomes: list[OperationOutcome] = field(default_factory=list)
    aborted: RunAborted | None = None

    @property
    def counts(self) -> dict[OutcomeStatus, int]:
        """Number of outcomes per status (every status present)."""
        counter = Counter(o.status for o in self.outcomes)
        return {status: counter.get(status, 0) for status in OutcomeStatus}

    @property
    def applied(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.APPLIED]

    @property
    def skipped(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.SKIPPED]

    @property
    def failed(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    @property
    def completed(self) -> bool:
        """The run was not aborted (individual failures allowed)."""
        return self.aborted is None

    @property
    def success(self) -> bool:
        """Completed with only applied or skipped operations."""
        return self.completed and not self.failed

    def summary(self) -> str:
        """Get a human-readable summary of the result."""
        counts = self.counts
        lines = [
            f"Applied {counts[OutcomeStatus.APPLIED]}, "
            f"skipped {counts[OutcomeStatus.SKIPPED]}, "
            f"failed {counts[OutcomeStatus.FAILED]} operations"
        ]

        for outcome in self.failed:
            lines.append(f"  ! {outcome.operation.describe()}: {outcome.reason}")

        if self.aborted is not None:
            lines.append(f"Run aborted: {self.aborted}")

        return "\n".join(lines)

    def log(self, logger: Any = None) -> None:
        """Emit one structured event per outcome and a closing summary event."""
        logger = logger or structlog.get_logger("usersync.report")

        for outcome in self.outcomes:
            log_data: dict[str, Any] = {
                "event": "operation_outcome",
                "operation": type(outcome.operation).__name__,
                "username": outcome.operation.username,
                "status": outcome.status.value,
                "attempts": outcome.attempts,
            }
            if outcome.reason:
                log_data["reason"] = outcome.reason

            if outcome.status is OutcomeStatus.FAILED:
                logger.warning(**log_data)
            else:
                logger.info(**log_data)

        logger.info(
            event="run_completed" if self.completed else "run_aborted",
            **{status.value: count for status, count in self.counts.items()},
            aborted=str(self.aborted) if self.aborted else None,
        )


class ReportSlots:
    """Per-operation result slots filled concurrently by reconcile workers.

    Each plan index has its own slot, so workers never share a counter.
    """

    def __init__(self, plan: ReconciliationPlan):
        self._operations = list(plan.operations)
        self._slots: list[OperationOutcome | None] = [None] * len(self._operations)

    def record(self, index: int, outcome: OperationOutcome) -> None:
        if self._slots[index] is not None:
            raise RuntimeError(f"Outcome for plan entry {index} recorded twice")
        self._slots[index] = outcome

    def build(self, aborted: RunAborted | None = None) -> RunReport:
        """Merge the slots; entries never attempted are skipped as run-aborted."""
        outcomes = [
            slot if slot is not None else OperationOutcome.skipped(op, RUN_ABORTED)
            for op, slot in zip(self._operations, self._slots)
        ]
        return RunReport(outcomes=outcomes, aborted=aborted)
