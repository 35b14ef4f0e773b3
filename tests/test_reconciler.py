from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest

from provisioner.services.provisioning import ProvisioningResolver
from provisioner.services.reconciler import ReconcilerState, StatusReconciler, poll_interval
from tests.conftest import NOW


class FakeTime:
    """Monotonic clock that only moves when the reconciler sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[int], Awaitable[None]] | None = None

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            await self.on_sleep(len(self.sleeps))
        await asyncio.sleep(0)


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def resolver(plans_repo, cipher, creation_logs, adapters) -> ProvisioningResolver:
    return ProvisioningResolver(
        plans_repo=plans_repo,
        crypto=cipher,
        creation_logs=creation_logs,
        adapter_factory=adapters,
        clock=lambda: NOW,
    )


@pytest.fixture
def reconciler(subscriptions_repo, resolver, fake_time) -> StatusReconciler:
    return StatusReconciler(
        subscriptions_repo=subscriptions_repo,
        resolver=resolver,
        clock=lambda: NOW,
        monotonic=fake_time.monotonic,
        sleep=fake_time.sleep,
    )


@pytest.fixture
def subscription(subscriptions_repo, add_panel, add_plan):
    async def _create(approved: bool = False) -> str:
        plan_id = await add_plan("lite", await add_panel("p1"))
        sub_id = await subscriptions_repo.create(
            username="alice", plan_id=plan_id, data_limit_gb=10, duration_days=30
        )
        if approved:
            await subscriptions_repo.approve(sub_id)
        return sub_id

    return _create


def _recorder() -> tuple[list[tuple[ReconcilerState, Any]], Callable]:
    events: list[tuple[ReconcilerState, Any]] = []

    def on_status_change(state, data) -> None:
        events.append((state, data))

    return events, on_status_change


def test_poll_interval_schedule() -> None:
    assert [poll_interval(a) for a in (0, 9, 10, 19, 20, 100)] == [3, 3, 5, 5, 10, 10]


async def test_pending_subscription_polls_at_three_seconds(reconciler, fake_time, subscription, adapters) -> None:
    sub_id = await subscription()
    events, callback = _recorder()

    observation = reconciler.observe(sub_id, callback)
    await observation.wait()

    assert fake_time.sleeps[:10] == [3] * 10
    assert fake_time.sleeps[10:20] == [5] * 10
    assert set(fake_time.sleeps[20:]) == {10}
    assert [state for state, _ in events] == [ReconcilerState.PENDING, ReconcilerState.TIMED_OUT]
    assert fake_time.now >= 600
    assert adapters.calls == []


async def test_rejection_mid_poll_stops_polling(reconciler, fake_time, subscription, subscriptions_repo, adapters) -> None:
    sub_id = await subscription()
    events, callback = _recorder()

    async def reject_on_third_sleep(count: int) -> None:
        if count == 3:
            await subscriptions_repo.reject(sub_id)

    fake_time.on_sleep = reject_on_third_sleep
    observation = reconciler.observe(sub_id, callback)
    await observation.wait()

    assert [state for state, _ in events] == [ReconcilerState.PENDING, ReconcilerState.REJECTED]
    assert fake_time.sleeps == [3, 3, 3]
    assert adapters.calls == []


async def test_approval_mid_poll_provisions_once(reconciler, fake_time, subscription, subscriptions_repo, adapters) -> None:
    sub_id = await subscription()
    events, callback = _recorder()

    async def approve_on_second_sleep(count: int) -> None:
        if count == 2:
            await subscriptions_repo.approve(sub_id)

    fake_time.on_sleep = approve_on_second_sleep
    observation = reconciler.observe(sub_id, callback)
    await observation.wait()

    assert [state for state, _ in events] == [ReconcilerState.PENDING, ReconcilerState.ACTIVE]
    data = events[-1][1]
    assert data["provisioned"] is True
    assert data["subscription_url"] == "https://p1.example.com/sub/alice"
    assert len(adapters.calls) == 1
    assert adapters.calls[0][2].notes == "Admin approved subscription"

    stored = await subscriptions_repo.get_by_id(sub_id)
    assert stored.vpn_user_created is True
    assert stored.subscription_url == "https://p1.example.com/sub/alice"
    assert stored.expire_at == NOW + 30 * 86400
    assert stored.provisioning_claimed_at is None


async def test_already_created_subscription_skips_resolver(reconciler, subscription, subscriptions_repo, adapters) -> None:
    sub_id = await subscription(approved=True)
    await subscriptions_repo.mark_provisioned(sub_id, subscription_url="https://p1.example.com/sub/alice", expire_at=NOW)

    tick = await reconciler.reconcile_once(sub_id)

    assert tick.state == ReconcilerState.ACTIVE
    assert tick.terminal
    assert tick.data["subscription_url"] == "https://p1.example.com/sub/alice"
    assert adapters.calls == []


async def test_failed_provisioning_is_retried_next_tick(reconciler, fake_time, subscription, subscriptions_repo, adapters) -> None:
    sub_id = await subscription(approved=True)
    adapters.fail_with("panel down", status_code=503)
    events, callback = _recorder()

    async def recover(count: int) -> None:
        adapters.error = None

    fake_time.on_sleep = recover
    observation = reconciler.observe(sub_id, callback)
    await observation.wait()

    assert [state for state, _ in events] == [ReconcilerState.ACTIVE, ReconcilerState.ACTIVE]
    assert events[0][1]["provisioned"] is False
    assert events[0][1]["error"]["code"] == "transport_error"
    assert events[1][1]["provisioned"] is True
    assert fake_time.sleeps == [3]
    assert len(adapters.calls) == 2
    stored = await subscriptions_repo.get_by_id(sub_id)
    assert stored.vpn_user_created is True


async def test_missing_subscription_stops_immediately(reconciler) -> None:
    events, callback = _recorder()

    observation = reconciler.observe("no-such-subscription", callback)
    await observation.wait()

    assert len(events) == 1
    state, data = events[0]
    assert state == ReconcilerState.PENDING
    assert data["error"]["code"] == "subscription_not_found"


async def test_unsubscribe_stops_polling(reconciler, fake_time, subscription) -> None:
    sub_id = await subscription()
    events: list[ReconcilerState] = []
    holder: dict[str, Any] = {}

    def on_status_change(state, data) -> None:
        events.append(state)
        holder["observation"]()

    holder["observation"] = reconciler.observe(sub_id, on_status_change)
    await holder["observation"].wait()

    assert events == [ReconcilerState.PENDING]
    assert holder["observation"].stopped
    assert len(fake_time.sleeps) <= 1


async def test_claim_held_elsewhere_blocks_provisioning(reconciler, subscription, subscriptions_repo, adapters) -> None:
    sub_id = await subscription(approved=True)
    assert await subscriptions_repo.try_claim(sub_id, now=NOW - 10, ttl_seconds=900)

    tick = await reconciler.reconcile_once(sub_id)
    outcome = await reconciler.create_vpn(sub_id)

    assert not tick.terminal
    assert tick.data["in_progress"] is True
    assert outcome.error.code == "invalid_request"
    assert adapters.calls == []


async def test_stale_claim_is_taken_over(reconciler, subscription, subscriptions_repo, adapters) -> None:
    sub_id = await subscription(approved=True)
    assert await subscriptions_repo.try_claim(sub_id, now=NOW - 1000, ttl_seconds=900)

    tick = await reconciler.reconcile_once(sub_id)

    assert tick.terminal
    assert tick.data["provisioned"] is True
    assert len(adapters.calls) == 1


async def test_create_vpn_requires_approval(reconciler, subscription, adapters) -> None:
    sub_id = await subscription()

    outcome = await reconciler.create_vpn(sub_id)

    assert outcome.error.code == "invalid_request"
    assert outcome.error.context["admin_decision"] == "pending"
    assert adapters.calls == []


async def test_create_vpn_provisions_once(reconciler, subscription, subscriptions_repo, adapters) -> None:
    sub_id = await subscription(approved=True)

    first = await reconciler.create_vpn(sub_id)
    second = await reconciler.create_vpn(sub_id)

    assert first.ok
    assert first.result.panel_name == "p1"
    assert second.error.code == "invalid_request"
    assert second.error.context["subscription_url"] == first.result.subscription_url
    assert len(adapters.calls) == 1


async def test_concurrent_create_vpn_creates_one_account(reconciler, subscription, adapters) -> None:
    sub_id = await subscription(approved=True)

    outcomes = await asyncio.gather(*(reconciler.create_vpn(sub_id) for _ in range(3)))

    assert sum(1 for o in outcomes if o.ok) == 1
    assert len(adapters.calls) == 1


async def test_two_reconcilers_share_the_store(subscriptions_repo, resolver, subscription, adapters) -> None:
    sub_id = await subscription(approved=True)
    first = StatusReconciler(subscriptions_repo=subscriptions_repo, resolver=resolver, clock=lambda: NOW)
    second = StatusReconciler(subscriptions_repo=subscriptions_repo, resolver=resolver, clock=lambda: NOW)

    outcomes = await asyncio.gather(first.create_vpn(sub_id), second.create_vpn(sub_id))

    assert sum(1 for o in outcomes if o.ok) == 1
    assert len(adapters.calls) == 1


async def test_unexpected_error_is_reported_and_polling_continues(
    reconciler, fake_time, subscription, subscriptions_repo, adapters, monkeypatch
) -> None:
    sub_id = await subscription(approved=True)
    original = reconciler.resolver.create_paid_subscription
    failures = [RuntimeError("database is locked")]

    async def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return await original(*args, **kwargs)

    monkeypatch.setattr(reconciler.resolver, "create_paid_subscription", flaky)
    events, callback = _recorder()

    observation = reconciler.observe(sub_id, callback)
    await observation.wait()

    assert observation.task.exception() is None
    assert events[0][1] == {
        "provisioned": False,
        "error": {"code": "internal_error", "message": "database is locked"},
    }
    assert events[-1][0] == ReconcilerState.ACTIVE
    assert events[-1][1]["provisioned"] is True
    assert fake_time.sleeps == [3]
    assert len(adapters.calls) == 1
    stored = await subscriptions_repo.get_by_id(sub_id)
    assert stored.vpn_user_created is True
    assert stored.provisioning_claimed_at is None


async def test_locks_are_dropped_after_use(reconciler, subscription, adapters) -> None:
    sub_id = await subscription(approved=True)

    await asyncio.gather(*(reconciler.create_vpn(sub_id) for _ in range(3)))
    await reconciler.create_vpn("no-such-subscription")

    assert reconciler._locks == {}
    assert reconciler._lock_users == {}


async def test_lost_race_reports_stored_link(reconciler, subscription, subscriptions_repo, adapters, monkeypatch) -> None:
    sub_id = await subscription(approved=True)
    original = reconciler.resolver.create_paid_subscription

    async def slow_worker_wins(*args, **kwargs):
        outcome = await original(*args, **kwargs)
        await subscriptions_repo.mark_provisioned(
            sub_id, subscription_url="https://p1.example.com/sub/other", expire_at=NOW + 5
        )
        return outcome

    monkeypatch.setattr(reconciler.resolver, "create_paid_subscription", slow_worker_wins)

    tick = await reconciler.reconcile_once(sub_id)

    assert tick.terminal
    assert tick.data["subscription_url"] == "https://p1.example.com/sub/other"
    assert tick.data["expire_at"] == NOW + 5
    stored = await subscriptions_repo.get_by_id(sub_id)
    assert stored.subscription_url == "https://p1.example.com/sub/other"
