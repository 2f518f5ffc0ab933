import asyncio

import pytest

from celine.usersync.engine import (
    Create,
    GrantRole,
    OutcomeStatus,
    ReconciliationPlan,
    Reconciler,
    Remove,
    RemovalKind,
    RetryPolicy,
    RevokeRole,
    compute_diff,
)
from celine.usersync.engine.report import RUN_ABORTED
from celine.usersync.errors import OperationRejected, OperationThrottled
from celine.usersync.keycloak.client import (
    KeycloakAuthError,
    KeycloakError,
    KeycloakThrottledError,
)
from celine.usersync.keycloak.fetcher import SnapshotFetcher
from conftest import REALM, FakeKeycloak, snapshot, user

NO_WAIT = RetryPolicy(max_attempts=3, backoff_base=0.0, backoff_max=0.0)


def _reconciler(client, **kwargs) -> Reconciler:
    kwargs.setdefault("retry", NO_WAIT)
    return Reconciler(client, REALM, **kwargs)


def _throttled() -> KeycloakThrottledError:
    return KeycloakThrottledError("Rate limited (429)", status_code=429)


@pytest.mark.asyncio
async def test_applies_create_then_grant(fake_keycloak):
    plan = ReconciliationPlan(
        [Create(record=user("alice")), GrantRole(username="alice", role="admin")]
    )

    report = await _reconciler(fake_keycloak).apply(plan)

    assert [o.status for o in report.outcomes] == [OutcomeStatus.APPLIED] * 2
    assert [c[0] for c in fake_keycloak.calls] == ["create_user", "grant_role"]
    assert fake_keycloak.user_roles["alice"] == {"admin"}
    assert report.success


@pytest.mark.asyncio
async def test_throttled_twice_then_applied(fake_keycloak):
    fake_keycloak.add_user("bob")
    fake_keycloak.fail("set_enabled", "bob", _throttled(), _throttled())
    plan = ReconciliationPlan([Remove(username="bob", kind=RemovalKind.DISABLE)])

    report = await _reconciler(fake_keycloak).apply(plan)

    outcome = report.outcomes[0]
    assert outcome.status is OutcomeStatus.APPLIED
    assert outcome.attempts == 3
    assert fake_keycloak.users["bob"]["enabled"] is False


@pytest.mark.asyncio
async def test_throttled_three_times_fails(fake_keycloak):
    fake_keycloak.add_user("bob")
    fake_keycloak.fail("set_enabled", "bob", _throttled(), _throttled(), _throttled())
    plan = ReconciliationPlan([Remove(username="bob", kind=RemovalKind.DISABLE)])

    report = await _reconciler(fake_keycloak).apply(plan)

    outcome = report.outcomes[0]
    assert outcome.status is OutcomeStatus.FAILED
    assert isinstance(outcome.error, OperationThrottled)
    assert outcome.attempts == 3
    assert report.completed
    assert not report.success


@pytest.mark.asyncio
async def test_backoff_delays_are_bounded(fake_keycloak, monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    fake_keycloak.add_user("bob")
    fake_keycloak.fail("set_enabled", "bob", _throttled(), _throttled())
    plan = ReconciliationPlan([Remove(username="bob", kind=RemovalKind.DISABLE)])

    retry = RetryPolicy(max_attempts=3, backoff_base=1.0, backoff_max=1.5)
    await Reconciler(fake_keycloak, REALM, retry=retry).apply(plan)

    assert delays == [1.0, 1.5]


def test_retry_after_raises_delay():
    policy = RetryPolicy(max_attempts=3, backoff_base=0.5, backoff_max=10.0)
    assert policy.delay(1) == 0.5
    assert policy.delay(2) == 1.0
    assert policy.delay(1, retry_after=4.0) == 4.0
    assert policy.delay(1, retry_after=60.0) == 10.0


@pytest.mark.asyncio
async def test_rejected_operation_is_not_retried_and_run_continues(fake_keycloak):
    fake_keycloak.add_user("carol")
    fake_keycloak.add_user("dave")
    fake_keycloak.fail("grant_role", "carol", KeycloakError("Bad request", status_code=400))
    plan = ReconciliationPlan(
        [
            GrantRole(username="carol", role="admin"),
            GrantRole(username="carol", role="viewer"),
            GrantRole(username="dave", role="viewer"),
        ]
    )

    report = await _reconciler(fake_keycloak).apply(plan)

    statuses = [o.status for o in report.outcomes]
    assert statuses == [OutcomeStatus.FAILED, OutcomeStatus.APPLIED, OutcomeStatus.APPLIED]
    assert isinstance(report.outcomes[0].error, OperationRejected)
    assert report.outcomes[0].attempts == 1
    assert report.completed


@pytest.mark.asyncio
async def test_create_race_is_skipped(fake_keycloak):
    fake_keycloak.add_user("erin")
    plan = ReconciliationPlan([Create(record=user("erin")), GrantRole(username="erin", role="x")])

    report = await _reconciler(fake_keycloak).apply(plan)

    assert report.outcomes[0].status is OutcomeStatus.SKIPPED
    assert report.outcomes[0].reason == "already-exists"
    assert report.outcomes[1].status is OutcomeStatus.APPLIED


@pytest.mark.asyncio
async def test_failed_create_skips_dependent_operations(fake_keycloak):
    fake_keycloak.fail("create_user", "finn", KeycloakError("Invalid email", status_code=400))
    plan = ReconciliationPlan(
        [Create(record=user("finn")), GrantRole(username="finn", role="admin")]
    )

    report = await _reconciler(fake_keycloak).apply(plan)

    assert report.outcomes[0].status is OutcomeStatus.FAILED
    assert report.outcomes[1].status is OutcomeStatus.SKIPPED
    assert report.outcomes[1].reason == "user-not-created"
    assert all(c[0] != "grant_role" for c in fake_keycloak.calls)


@pytest.mark.asyncio
async def test_deleting_absent_user_is_skipped(fake_keycloak):
    plan = ReconciliationPlan([Remove(username="ghost", kind=RemovalKind.DELETE)])
    report = await _reconciler(fake_keycloak).apply(plan)
    assert report.outcomes[0].status is OutcomeStatus.SKIPPED
    assert report.outcomes[0].reason == "already-absent"


@pytest.mark.asyncio
async def test_revoking_role_missing_from_catalog_is_rejected():
    client = FakeKeycloak(known_roles={"admin"})
    client.add_user("gail", roles={"retired"})
    plan = ReconciliationPlan([RevokeRole(username="gail", role="retired")])

    report = await _reconciler(client).apply(plan)

    assert report.outcomes[0].status is OutcomeStatus.FAILED
    assert isinstance(report.outcomes[0].error, OperationRejected)


@pytest.mark.asyncio
async def test_missing_role_created_when_enabled():
    client = FakeKeycloak(known_roles=set())
    client.add_user("hank")
    plan = ReconciliationPlan([GrantRole(username="hank", role="new")])

    report = await _reconciler(client, create_missing_roles=True).apply(plan)

    assert report.outcomes[0].status is OutcomeStatus.APPLIED
    assert "new" in client.known_roles


@pytest.mark.asyncio
async def test_authentication_loss_aborts_remaining_operations(fake_keycloak):
    for name in ("a", "b", "c"):
        fake_keycloak.add_user(name)
    fake_keycloak.fail("grant_role", "a", KeycloakAuthError("expired", status_code=401))
    plan = ReconciliationPlan(
        [
            GrantRole(username="a", role="r1"),
            GrantRole(username="a", role="r2"),
            GrantRole(username="b", role="r1"),
            GrantRole(username="c", role="r1"),
        ]
    )

    report = await _reconciler(fake_keycloak, max_workers=1).apply(plan)

    assert not report.completed
    assert report.outcomes[0].status is OutcomeStatus.FAILED
    for outcome in report.outcomes[1:]:
        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason == RUN_ABORTED
    assert "authentication lost" in str(report.aborted)


@pytest.mark.asyncio
async def test_cancellation_before_apply_skips_everything(fake_keycloak):
    cancel = asyncio.Event()
    cancel.set()
    plan = ReconciliationPlan([Create(record=user("a")), Create(record=user("b"))])

    report = await _reconciler(fake_keycloak, cancel_event=cancel).apply(plan)

    assert fake_keycloak.calls == []
    assert not report.completed
    assert [o.reason for o in report.outcomes] == [RUN_ABORTED, RUN_ABORTED]


@pytest.mark.asyncio
async def test_cancellation_lets_in_flight_operation_finish(fake_keycloak):
    cancel = asyncio.Event()
    fake_keycloak.add_user("ivy")

    original = fake_keycloak.set_enabled

    async def cancelling_set_enabled(realm, username, enabled):
        cancel.set()
        await original(realm, username, enabled)

    fake_keycloak.set_enabled = cancelling_set_enabled
    plan = ReconciliationPlan(
        [
            Remove(username="ivy", kind=RemovalKind.DISABLE),
            Create(record=user("jack")),
        ]
    )

    report = await _reconciler(fake_keycloak, max_workers=1, cancel_event=cancel).apply(plan)

    assert report.outcomes[0].status is OutcomeStatus.APPLIED
    assert report.outcomes[1].status is OutcomeStatus.SKIPPED
    assert report.outcomes[1].reason == RUN_ABORTED
    assert "jack" not in fake_keycloak.users
    assert report.aborted is not None


@pytest.mark.asyncio
async def test_groups_run_concurrently_but_in_order_per_user(fake_keycloak):
    active = 0
    peak = 0
    original = fake_keycloak.grant_role

    async def slow_grant(realm, username, role, create_missing=False):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        await original(realm, username, role, create_missing)

    fake_keycloak.grant_role = slow_grant
    ops = []
    for name in ("a", "b", "c", "d"):
        ops.append(Create(record=user(name)))
        ops.extend(GrantRole(username=name, role=r) for r in ("r1", "r2"))

    report = await _reconciler(fake_keycloak, max_workers=2).apply(ReconciliationPlan(ops))

    assert report.success
    assert peak == 2
    for name in ("a", "b", "c", "d"):
        methods = [c[0] for c in fake_keycloak.calls if c[1] == name]
        assert methods == ["create_user", "grant_role", "grant_role"]


@pytest.mark.asyncio
async def test_apply_then_rediff_converges(config):
    client = FakeKeycloak()
    client.add_user("alice", roles={"viewer", "legacy"}, email="old@example.org")
    client.add_user("bob")
    client.add_user("carol", enabled=False)

    desired = snapshot(
        user("alice", email="alice@example.org", roles=["viewer", "admin"]),
        user("carol", roles=["viewer"]),
        user("dave", first_name="Dave", roles=["admin"]),
    )

    fetcher = SnapshotFetcher(client)
    plan = compute_diff(desired, await fetcher.fetch_observed(REALM), config)
    report = await _reconciler(client).apply(plan)
    assert report.success

    replan = compute_diff(desired, await fetcher.fetch_observed(REALM), config)
    assert not replan.has_changes
    assert client.users["bob"]["enabled"] is False
