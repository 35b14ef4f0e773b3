from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from provisioner.errors import InvalidProvisioningRequest, PlanNotFound
from provisioner.models import Subscription
from provisioner.repositories.subscriptions import SubscriptionRepository
from provisioner.services.provisioning import ProvisioningOutcome, ProvisioningResolver


logger = logging.getLogger(__name__)

POLL_CEILING_SECONDS = 600


class ReconcilerState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


StatusCallback = Callable[[ReconcilerState, "dict[str, Any] | None"], "Awaitable[None] | None"]


def poll_interval(attempt: int) -> int:
    """Seconds to wait after poll number ``attempt`` (zero based)."""
    if attempt < 10:
        return 3
    if attempt < 20:
        return 5
    return 10


@dataclass(slots=True)
class Tick:
    state: ReconcilerState
    terminal: bool
    data: dict[str, Any] | None = None


class Observation:
    """Handle returned by ``StatusReconciler.observe``; calling it unsubscribes."""

    def __init__(self, subscription_id: str, stop: asyncio.Event) -> None:
        self.subscription_id = subscription_id
        self._stop = stop
        self.task: asyncio.Task | None = None

    def __call__(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def wait_stopped(self) -> None:
        await self._stop.wait()

    async def wait(self) -> None:
        if self.task is not None:
            await self.task


class StatusReconciler:
    """Bridges admin approval to VPN provisioning by polling the subscription store."""

    def __init__(
        self,
        *,
        subscriptions_repo: SubscriptionRepository,
        resolver: ProvisioningResolver,
        claim_ttl_seconds: int = 900,
        ceiling_seconds: float = POLL_CEILING_SECONDS,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.subscriptions_repo = subscriptions_repo
        self.resolver = resolver
        self.claim_ttl_seconds = claim_ttl_seconds
        self.ceiling_seconds = ceiling_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _subscription_lock(self, subscription_id: str) -> AsyncIterator[None]:
        """Per-subscription lock, dropped once no coroutine holds or awaits it."""
        lock = self._locks.setdefault(subscription_id, asyncio.Lock())
        self._lock_users[subscription_id] = self._lock_users.get(subscription_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[subscription_id] - 1
            if remaining:
                self._lock_users[subscription_id] = remaining
            else:
                del self._lock_users[subscription_id]
                del self._locks[subscription_id]

    def observe(self, subscription_id: str, on_status_change: StatusCallback) -> Observation:
        observation = Observation(subscription_id, asyncio.Event())
        loop = asyncio.get_running_loop()
        observation.task = loop.create_task(
            self._run(observation, on_status_change),
            name=f"reconcile-{subscription_id}",
        )
        return observation

    async def reconcile_once(self, subscription_id: str) -> Tick:
        subscription = await self.subscriptions_repo.get_by_id(subscription_id)
        if subscription is None:
            return Tick(
                ReconcilerState.PENDING,
                terminal=True,
                data={"error": {"code": "subscription_not_found", "message": "Subscription not found"}},
            )

        if subscription.is_rejected:
            return Tick(ReconcilerState.REJECTED, terminal=True)

        if not subscription.is_approved:
            return Tick(ReconcilerState.PENDING, terminal=False)

        if subscription.vpn_user_created:
            return Tick(ReconcilerState.ACTIVE, terminal=True, data=self._provisioned_data(subscription))

        outcome = await self._provision(subscription)
        if outcome is None:
            return Tick(ReconcilerState.ACTIVE, terminal=False, data={"provisioned": False, "in_progress": True})
        if not outcome.ok:
            return Tick(
                ReconcilerState.ACTIVE,
                terminal=False,
                data={"provisioned": False, "error": outcome.error.to_dict()},
            )
        return Tick(
            ReconcilerState.ACTIVE,
            terminal=True,
            data={
                "provisioned": True,
                "subscription_url": outcome.result.subscription_url,
                "expire_at": outcome.result.expire,
                "panel_id": outcome.result.panel_id,
            },
        )

    async def create_vpn(self, subscription_id: str) -> ProvisioningOutcome:
        """Operator-driven one-shot provisioning for an approved subscription."""
        subscription = await self.subscriptions_repo.get_by_id(subscription_id)
        if subscription is None:
            return ProvisioningOutcome(
                error=InvalidProvisioningRequest("Subscription not found", subscription_id=subscription_id)
            )
        if subscription.vpn_user_created:
            return ProvisioningOutcome(
                error=InvalidProvisioningRequest(
                    "VPN user already created for this subscription",
                    subscription_id=subscription_id,
                    subscription_url=subscription.subscription_url,
                )
            )
        if not subscription.is_approved:
            return ProvisioningOutcome(
                error=InvalidProvisioningRequest(
                    "Subscription is not approved",
                    subscription_id=subscription_id,
                    status=subscription.status,
                    admin_decision=subscription.admin_decision,
                )
            )

        outcome = await self._provision(subscription)
        if outcome is None:
            return ProvisioningOutcome(
                error=InvalidProvisioningRequest(
                    "Provisioning for this subscription is already in progress",
                    subscription_id=subscription_id,
                )
            )
        return outcome

    async def _provision(self, subscription: Subscription) -> ProvisioningOutcome | None:
        """Claim, provision and persist. Returns None when another worker holds the claim."""
        async with self._subscription_lock(subscription.id):
            claimed = await self.subscriptions_repo.try_claim(
                subscription.id,
                now=int(self._clock()),
                ttl_seconds=self.claim_ttl_seconds,
            )
            if not claimed:
                logger.info("Subscription %s is already claimed or provisioned", subscription.id)
                return None

            try:
                if subscription.plan_id is None:
                    outcome = ProvisioningOutcome(
                        error=PlanNotFound("Subscription has no plan", subscription_id=subscription.id)
                    )
                else:
                    outcome = await self.resolver.create_paid_subscription(
                        subscription.username,
                        subscription.plan_id,
                        subscription.data_limit_gb,
                        subscription.duration_days,
                        subscription.id,
                        notes="Admin approved subscription",
                    )
            except BaseException:
                await self.subscriptions_repo.release_claim(subscription.id)
                raise

            if not outcome.ok:
                await self.subscriptions_repo.release_claim(subscription.id)
                logger.warning(
                    "Subscription %s approved but not provisioned: [%s] %s",
                    subscription.id,
                    outcome.error.code,
                    outcome.error.message,
                )
                return outcome

            stored = await self.subscriptions_repo.mark_provisioned(
                subscription.id,
                subscription_url=outcome.result.subscription_url,
                expire_at=outcome.result.expire,
            )
            if stored:
                return outcome

            logger.error(
                "Subscription %s was provisioned on panel %s but already marked as created",
                subscription.id,
                outcome.result.panel_id,
            )
            current = await self.subscriptions_repo.get_by_id(subscription.id)
            if current is None or not current.subscription_url:
                return outcome
            # The stored row is what the customer sees; report it, not the orphaned panel user.
            return ProvisioningOutcome(
                result=replace(
                    outcome.result,
                    subscription_url=current.subscription_url,
                    expire=current.expire_at if current.expire_at is not None else outcome.result.expire,
                )
            )

    async def _run(self, observation: Observation, on_status_change: StatusCallback) -> None:
        subscription_id = observation.subscription_id
        started = self._monotonic()
        attempt = 0
        last_state: ReconcilerState | None = None

        while not observation.stopped:
            if self._monotonic() - started >= self.ceiling_seconds:
                logger.info("Stopped polling subscription %s after %ss", subscription_id, self.ceiling_seconds)
                await self._emit(on_status_change, ReconcilerState.TIMED_OUT, {"attempts": attempt})
                return

            try:
                tick = await self.reconcile_once(subscription_id)
            except Exception as exc:
                logger.exception("Reconciling subscription %s failed", subscription_id)
                tick = Tick(
                    last_state or ReconcilerState.PENDING,
                    terminal=False,
                    data={"provisioned": False, "error": {"code": "internal_error", "message": str(exc)}},
                )

            if observation.stopped:
                return
            if tick.state != last_state or tick.terminal or (tick.data and "error" in tick.data):
                await self._emit(on_status_change, tick.state, tick.data)
            last_state = tick.state
            if tick.terminal:
                return

            await self._pause(poll_interval(attempt), observation)
            attempt += 1

    async def _pause(self, seconds: float, observation: Observation) -> None:
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        stopper = asyncio.ensure_future(observation.wait_stopped())
        _, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

    @staticmethod
    async def _emit(callback: StatusCallback, state: ReconcilerState, data: dict[str, Any] | None) -> None:
        result = callback(state, data)
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def _provisioned_data(subscription: Subscription) -> dict[str, Any]:
        return {
            "provisioned": True,
            "subscription_url": subscription.subscription_url,
            "expire_at": subscription.expire_at,
        }
