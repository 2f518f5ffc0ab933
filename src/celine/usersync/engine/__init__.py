"""Reconciliation engine: diff, plan, apply, report."""

from celine.usersync.engine.diff import compute_diff
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
from celine.usersync.engine.reconciler import Reconciler, RetryPolicy
from celine.usersync.engine.report import OperationOutcome, OutcomeStatus, RunReport

__all__ = [
    "compute_diff",
    "Create",
    "EnableOrDisable",
    "GrantRole",
    "ReconciliationOperation",
    "ReconciliationPlan",
    "Remove",
    "RemovalKind",
    "RevokeRole",
    "UpdateAttributes",
    "Reconciler",
    "RetryPolicy",
    "OperationOutcome",
    "OutcomeStatus",
    "RunReport",
]
