"""Diff engine: desired vs. observed snapshot -> reconciliation plan.

``compute_diff`` is pure and deterministic. It never emits no-op operations,
so diffing a converged realm yields an empty plan.

Per username, operations are emitted in the order
Create -> UpdateAttributes -> EnableOrDisable -> GrantRole -> RevokeRole -> Remove.
Desired usernames are processed in desired-snapshot order, pure removals
afterwards in observed-snapshot order. Roles named in ``ignored_roles`` are
left out on both sides.
"""

from __future__ import annotations

import logging

from celine.usersync.config import RunConfiguration
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
from celine.usersync.models import ATTRIBUTE_FIELDS, UserRecord, UserSnapshot

logger = logging.getLogger(__name__)


def compute_diff(
    desired: UserSnapshot,
    observed: UserSnapshot,
    config: RunConfiguration,
) -> ReconciliationPlan:
    """Compute the operations that turn ``observed`` into ``desired``.

    Args:
        desired: Desired state from the configured provider
        observed: Current state fetched from Keycloak
        config: Run configuration (removal kind, protected users)

    Returns:
        ReconciliationPlan, possibly empty
    """
    plan = ReconciliationPlan()
    removal = RemovalKind.DELETE if config.delete_users else RemovalKind.DISABLE
    protected = config.protected_usernames()
    ignored = frozenset(config.ignored_roles or ())

    for username in desired:
        want = desired[username]

        if username not in observed:
            plan.operations.append(Create(record=want))
            plan.operations.extend(
                GrantRole(username=username, role=role)
                for role in sorted(want.roles - ignored)
            )
            continue

        have = observed[username]
        plan.operations.extend(_attribute_changes(want, have))

        if observed.roles_known(username):
            wanted = want.roles - ignored
            held = have.roles - ignored
            plan.operations.extend(
                GrantRole(username=username, role=role)
                for role in sorted(wanted - held)
            )
            plan.operations.extend(
                RevokeRole(username=username, role=role)
                for role in sorted(held - wanted)
            )
        else:
            logger.warning("Role mappings of %s unknown, leaving its roles untouched", username)

    for username in observed:
        if username in desired:
            continue
        if username in protected:
            logger.info("Not removing protected user: %s", username)
            continue
        if removal is RemovalKind.DISABLE and not observed[username].enabled:
            continue
        plan.operations.append(Remove(username=username, kind=removal))

    return plan


def _attribute_changes(want: UserRecord, have: UserRecord) -> list[ReconciliationOperation]:
    """Attribute and enabled-flag operations for a user present on both sides.

    A desired attribute of ``None`` is unmanaged and never compared.
    """
    ops: list[ReconciliationOperation] = []

    changes = tuple(
        (name, getattr(want, name))
        for name in sorted(ATTRIBUTE_FIELDS)
        if getattr(want, name) is not None and getattr(want, name) != getattr(have, name)
    )
    if changes:
        ops.append(UpdateAttributes(username=want.username, changes=changes))

    if want.enabled != have.enabled:
        ops.append(EnableOrDisable(username=want.username, enabled=want.enabled))

    return ops
