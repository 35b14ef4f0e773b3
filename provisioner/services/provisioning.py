from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

from provisioner.errors import (
    InvalidProvisioningRequest,
    NoPanelAssigned,
    PanelInactive,
    PanelMisconfigured,
    PanelOffline,
    PlanNotFound,
    ProvisioningError,
    ProvisioningIncompleteResponse,
    ProvisioningTransportError,
    ServiceUnavailable,
    TrialNotEligible,
    UnsupportedPanelType,
)
from provisioner.models import (
    GIB,
    SECONDS_PER_DAY,
    HealthStatus,
    Panel,
    PanelType,
    Plan,
    ProvisioningRequest,
    ProvisioningResult,
)
from provisioner.repositories.creation_logs import CreationLogRepository
from provisioner.repositories.plans import PlanRepository
from provisioner.repositories.test_users import TestUserRepository
from provisioner.services.adapters.base import (
    PanelAdapter,
    PanelConfigError,
    PanelResponseError,
    PanelTransportError,
    PanelUser,
    PanelUserRequest,
)
from provisioner.services.adapters.marzban import MarzbanAdapter
from provisioner.services.adapters.marzneshin import MarzneshinAdapter
from provisioner.services.crypto import CredentialCipher, CredentialError


logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[str, type[PanelAdapter]] = {
    PanelType.MARZBAN.value: MarzbanAdapter,
    PanelType.MARZNESHIN.value: MarzneshinAdapter,
}

AdapterFactory = Callable[[Panel, str], PanelAdapter]


@dataclass(slots=True)
class ProvisioningOutcome:
    """Typed result of a provisioning entry point: exactly one of the fields is set."""

    result: ProvisioningResult | None = None
    error: ProvisioningError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


class ProvisioningResolver:
    """Resolves a plan to its single assigned panel and provisions a user on it.

    There is never a fallback panel: when the assigned panel cannot be used the
    call fails with a typed error naming the plan and panel.
    """

    def __init__(
        self,
        *,
        plans_repo: PlanRepository,
        crypto: CredentialCipher,
        creation_logs: CreationLogRepository | None = None,
        test_users: TestUserRepository | None = None,
        verify_tls: bool = False,
        timeout_seconds: int = 30,
        free_trial_enabled: bool = False,
        adapter_factory: AdapterFactory | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.plans_repo = plans_repo
        self.crypto = crypto
        self.creation_logs = creation_logs
        self.test_users = test_users
        self.verify_tls = verify_tls
        self.timeout_seconds = timeout_seconds
        self.free_trial_enabled = free_trial_enabled
        self._adapter_factory = adapter_factory
        self._clock = clock

    async def create_user_from_panel(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        logger.info("Provisioning %s on plan %s", request.username, request.plan_id)
        try:
            result = await self._provision(request)
        except ProvisioningError as exc:
            logger.warning("Provisioning %s failed: [%s] %s", request.username, exc.code, exc.message)
            return ProvisioningOutcome(error=exc)
        logger.info(
            "Provisioned %s on panel %s (%s)",
            result.username,
            result.panel_name,
            result.panel_id,
        )
        return ProvisioningOutcome(result=result)

    async def create_paid_subscription(
        self,
        username: str,
        plan_ref: str,
        data_limit_gb: int,
        duration_days: int,
        subscription_id: str,
        notes: str | None = None,
    ) -> ProvisioningOutcome:
        try:
            plan_id = await self.resolve_plan_ref(plan_ref)
        except ProvisioningError as exc:
            return ProvisioningOutcome(error=exc)
        return await self.create_user_from_panel(
            ProvisioningRequest(
                plan_id=plan_id,
                username=username,
                data_limit_gb=data_limit_gb,
                duration_days=duration_days,
                notes=notes or f"Paid subscription - ID: {subscription_id}",
                subscription_id=subscription_id,
            )
        )

    async def create_free_trial(
        self,
        *,
        username: str,
        plan_ref: str,
        email: str,
        phone_number: str,
        device_fingerprint: str | None = None,
        data_limit_gb: int = 1,
        duration_days: int = 1,
    ) -> ProvisioningOutcome:
        if not self.free_trial_enabled or self.test_users is None:
            return ProvisioningOutcome(error=ServiceUnavailable("Free trial is temporarily unavailable"))

        if await self.test_users.has_prior_trial(
            email=email,
            phone_number=phone_number,
            device_fingerprint=device_fingerprint,
        ):
            return ProvisioningOutcome(
                error=TrialNotEligible(
                    "A free trial was already issued for this email, phone number or device",
                    email=email,
                    phone_number=phone_number,
                )
            )

        try:
            plan_id = await self.resolve_plan_ref(plan_ref)
        except ProvisioningError as exc:
            return ProvisioningOutcome(error=exc)

        outcome = await self.create_user_from_panel(
            ProvisioningRequest(
                plan_id=plan_id,
                username=username,
                data_limit_gb=data_limit_gb,
                duration_days=duration_days,
                notes=f"Free trial - Plan: {plan_ref}",
                is_free_trial=True,
            )
        )
        if outcome.ok:
            result = outcome.result
            await self.test_users.record(
                username=result.username,
                email=email,
                phone_number=phone_number,
                device_fingerprint=device_fingerprint,
                panel_id=result.panel_id,
                panel_name=result.panel_name,
                subscription_url=result.subscription_url,
                data_limit_bytes=result.data_limit_bytes,
                expire_at=result.expire,
            )
        return outcome

    async def renew_user(
        self,
        plan_ref: str,
        username: str,
        data_limit_gb: int,
        duration_days: int,
        subscription_id: str | None = None,
    ) -> ProvisioningOutcome:
        """Add data and time to an existing account on the plan's panel."""
        try:
            self._validate(username, data_limit_gb, duration_days)
            plan_id = await self.resolve_plan_ref(plan_ref)
            plan, panel = await self._resolve_panel(plan_id)
            user = await self._call_adapter(
                plan,
                panel,
                action="update_user",
                call=lambda adapter: adapter.update_user(
                    username, data_limit_gb=data_limit_gb, duration_days=duration_days
                ),
                request_data={"username": username, "data_limit_gb": data_limit_gb, "duration_days": duration_days},
                subscription_id=subscription_id,
            )
        except ProvisioningError as exc:
            logger.warning("Renewal of %s failed: [%s] %s", username, exc.code, exc.message)
            return ProvisioningOutcome(error=exc)

        now = int(self._clock())
        return ProvisioningOutcome(
            result=self._build_result(
                panel,
                user,
                data_limit_bytes=user.data_limit if user.data_limit is not None else data_limit_gb * GIB,
                default_expire=now + duration_days * SECONDS_PER_DAY,
            )
        )

    async def lookup_user(self, plan_ref: str, username: str) -> ProvisioningOutcome:
        """Read an existing account from the plan's panel, for delivery pages."""
        try:
            if not username.strip():
                raise InvalidProvisioningRequest("Username is required")
            plan_id = await self.resolve_plan_ref(plan_ref)
            plan, panel = await self._resolve_panel(plan_id)
            user = await self._call_adapter(
                plan,
                panel,
                action="get_user",
                call=lambda adapter: adapter.get_user(username),
                request_data={"username": username},
                audit=False,
            )
        except ProvisioningError as exc:
            return ProvisioningOutcome(error=exc)
        return ProvisioningOutcome(
            result=self._build_result(panel, user, data_limit_bytes=user.data_limit or 0, default_expire=0)
        )

    async def resolve_plan_ref(self, plan_ref: str) -> str:
        """Accept a plan UUID or its human slug; return the plan id."""
        ref = (plan_ref or "").strip()
        if not ref:
            raise PlanNotFound("Plan reference is empty", plan_ref=plan_ref)
        try:
            uuid.UUID(ref)
        except ValueError:
            plan = await self.plans_repo.get_by_slug(ref)
            if plan is None:
                raise PlanNotFound(f"Plan not found for identifier `{ref}`", plan_ref=ref) from None
            return plan.id
        return ref

    async def _provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        self._validate(request.username, request.data_limit_gb, request.duration_days)
        plan, panel = await self._resolve_panel(request.plan_id)

        panel_request = PanelUserRequest(
            username=request.username,
            data_limit_gb=request.data_limit_gb,
            duration_days=request.duration_days,
            notes=request.notes,
            panel_id=panel.id,
            enabled_protocols=list(panel.enabled_protocols),
            subscription_id=request.subscription_id,
        )
        user = await self._call_adapter(
            plan,
            panel,
            action="create_user",
            call=lambda adapter: adapter.create_user(panel_request),
            request_data={**asdict(panel_request), "is_free_trial": request.is_free_trial},
            subscription_id=request.subscription_id,
        )

        now = int(self._clock())
        return self._build_result(
            panel,
            user,
            data_limit_bytes=request.data_limit_gb * GIB,
            default_expire=now + request.duration_days * SECONDS_PER_DAY,
        )

    async def _resolve_panel(self, plan_id: str) -> tuple[Plan, Panel]:
        found = await self.plans_repo.get_active_with_panel(plan_id)
        if found is None:
            raise PlanNotFound(f"Plan not found or inactive: {plan_id}", plan_id=plan_id)
        plan, panel = found

        if plan.assigned_panel_id is None or panel is None:
            raise NoPanelAssigned(
                f"Plan `{plan.plan_identifier}` has no panel assigned",
                plan_id=plan.id,
                plan=plan.plan_identifier,
            )

        context = {"plan_id": plan.id, "plan": plan.plan_identifier, "panel_id": panel.id, "panel": panel.name}
        if not panel.active:
            raise PanelInactive(
                f"Panel `{panel.name}` assigned to plan `{plan.plan_identifier}` is inactive",
                **context,
            )
        if panel.health_status == HealthStatus.OFFLINE.value:
            raise PanelOffline(
                f"Panel `{panel.name}` assigned to plan `{plan.plan_identifier}` is offline",
                **context,
            )
        if panel.type == PanelType.MARZNESHIN.value and not panel.default_inbounds:
            raise PanelMisconfigured(
                f"Panel `{panel.name}` assigned to plan `{plan.plan_identifier}` has no default inbounds",
                **context,
            )

        logger.info("Plan %s resolved to panel %s (%s, %s)", plan.plan_identifier, panel.name, panel.type, panel.id)
        return plan, panel

    def _open_adapter(self, plan: Plan, panel: Panel) -> PanelAdapter:
        adapter_cls = ADAPTER_CLASSES.get(panel.type)
        if adapter_cls is None:
            raise UnsupportedPanelType(
                f"Panel `{panel.name}` has unsupported type `{panel.type}`",
                plan_id=plan.id,
                panel_id=panel.id,
                panel_type=panel.type,
            )

        try:
            password = self.crypto.panel_password(panel)
        except CredentialError as exc:
            raise PanelMisconfigured(str(exc), plan_id=plan.id, panel_id=panel.id, panel=panel.name) from exc

        if self._adapter_factory is not None:
            return self._adapter_factory(panel, password)
        try:
            return adapter_cls(
                panel=panel,
                password=password,
                verify_tls=self.verify_tls,
                timeout_seconds=self.timeout_seconds,
                clock=self._clock,
            )
        except ValueError as exc:
            raise PanelMisconfigured(
                f"Panel `{panel.name}`: {exc}", plan_id=plan.id, panel_id=panel.id, panel=panel.name
            ) from exc

    async def _call_adapter(
        self,
        plan: Plan,
        panel: Panel,
        *,
        action: str,
        call: Callable[[PanelAdapter], Awaitable[PanelUser]],
        request_data: dict[str, Any],
        subscription_id: str | None = None,
        audit: bool = True,
    ) -> PanelUser:
        adapter = self._open_adapter(plan, panel)
        log_name = f"{panel.type}.{action}"
        context = {"plan_id": plan.id, "panel_id": panel.id, "panel": panel.name}

        try:
            async with adapter:
                user = await call(adapter)
        except PanelTransportError as exc:
            error: ProvisioningError = ProvisioningTransportError(
                f"VPN {action} failed on panel `{panel.name}`: {exc.message}",
                provider=exc.provider,
                status_code=exc.status_code,
                **context,
            )
            if audit:
                await self._audit(log_name, panel, request_data, subscription_id, error=error)
            raise error from exc
        except PanelResponseError as exc:
            error = ProvisioningIncompleteResponse(
                f"Panel `{panel.name}` returned an unusable response: {exc.message}",
                provider=exc.provider,
                **context,
            )
            if audit:
                await self._audit(log_name, panel, request_data, subscription_id, error=error)
            raise error from exc
        except PanelConfigError as exc:
            error = PanelMisconfigured(
                f"Panel `{panel.name}` assigned to plan `{plan.plan_identifier}` is misconfigured: {exc.message}",
                provider=exc.provider,
                **context,
            )
            if audit:
                await self._audit(log_name, panel, request_data, subscription_id, error=error)
            raise error from exc

        if not user.username or not user.subscription_url:
            error = ProvisioningIncompleteResponse(
                f"Panel `{panel.name}` response has no username or subscription URL",
                provider=panel.type,
                **context,
            )
            if audit:
                await self._audit(log_name, panel, request_data, subscription_id, error=error)
            raise error

        if audit:
            await self._audit(log_name, panel, request_data, subscription_id, user=user)
        return user

    async def _audit(
        self,
        adapter_name: str,
        panel: Panel,
        request_data: dict[str, Any],
        subscription_id: str | None,
        *,
        user: PanelUser | None = None,
        error: ProvisioningError | None = None,
    ) -> None:
        if self.creation_logs is None:
            return
        response_data = None
        if user is not None:
            response_data = {
                "username": user.username,
                "subscription_url": user.subscription_url,
                "expire": user.expire,
                "data_limit": user.data_limit,
            }
        try:
            await self.creation_logs.add(
                adapter=adapter_name,
                request_data=request_data,
                success=error is None,
                subscription_id=subscription_id,
                panel_id=panel.id,
                panel_name=panel.name,
                panel_url=panel.base_url,
                response_data=response_data,
                error_code=error.code if error is not None else None,
                error_message=error.message if error is not None else None,
            )
        except sqlite3.Error:
            logger.exception("Failed to write creation log for panel %s", panel.name)

    @staticmethod
    def _validate(username: str, data_limit_gb: int, duration_days: int) -> None:
        if not (username or "").strip():
            raise InvalidProvisioningRequest("Username is required")
        if data_limit_gb <= 0:
            raise InvalidProvisioningRequest("Data limit must be a positive number of GB", data_limit_gb=data_limit_gb)
        if duration_days <= 0:
            raise InvalidProvisioningRequest("Duration must be a positive number of days", duration_days=duration_days)

    @staticmethod
    def _build_result(
        panel: Panel,
        user: PanelUser,
        *,
        data_limit_bytes: int,
        default_expire: int,
    ) -> ProvisioningResult:
        # Panel identity comes from the validated record, never from the response.
        return ProvisioningResult(
            username=user.username,
            subscription_url=user.subscription_url,
            expire=user.expire if user.expire is not None else default_expire,
            data_limit_bytes=data_limit_bytes,
            panel_type=panel.type,
            panel_name=panel.name,
            panel_id=panel.id,
            panel_url=panel.base_url,
        )
