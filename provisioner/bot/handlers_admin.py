from __future__ import annotations

import logging
from datetime import datetime, timezone

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import CallbackQuery, Message

from provisioner.bot.keyboards import (
    ADMIN_BUTTON_LIST_PANELS,
    ADMIN_BUTTON_LIST_PLANS,
    ADMIN_BUTTON_PENDING_SUBS,
    CALLBACK_APPROVE,
    CALLBACK_CREATE_VPN,
    CALLBACK_REJECT,
    admin_menu_keyboard,
    create_vpn_keyboard,
    subscription_actions_keyboard,
)
from provisioner.models import AdminDecision, Subscription
from provisioner.repositories.panels import PanelRepository
from provisioner.repositories.plans import PlanRepository
from provisioner.repositories.subscriptions import SubscriptionRepository
from provisioner.services.adapters.base import PanelResponseError, PanelTransportError
from provisioner.services.crypto import CredentialError
from provisioner.services.panel_health import PanelCheck, PanelHealthService
from provisioner.services.provisioning import ProvisioningOutcome
from provisioner.services.reconciler import StatusReconciler


logger = logging.getLogger(__name__)


def format_expire(expire_at: int | None) -> str:
    if not expire_at:
        return "-"
    return datetime.fromtimestamp(expire_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def format_subscription(subscription: Subscription) -> str:
    created = "yes" if subscription.vpn_user_created else "no"
    lines = [
        f"اشتراک `{subscription.id}`",
        f"username={subscription.username} plan={subscription.plan_id or '-'}",
        f"gb={subscription.data_limit_gb} days={subscription.duration_days}",
        f"status={subscription.status} decision={subscription.admin_decision} vpn_created={created}",
    ]
    if subscription.subscription_url:
        lines.append(f"لینک: {subscription.subscription_url}")
        lines.append(f"انقضا: {format_expire(subscription.expire_at)}")
    return "\n".join(lines)


def format_outcome(subscription_id: str, outcome: ProvisioningOutcome) -> str:
    if outcome.ok:
        result = outcome.result
        return (
            f"کانفیگ اشتراک `{subscription_id}` ساخته شد.\n"
            f"پنل: {result.panel_name} ({result.panel_type})\n"
            f"لینک: {result.subscription_url}\n"
            f"انقضا: {format_expire(result.expire)}"
        )
    error = outcome.error
    return f"ساخت کانفیگ اشتراک `{subscription_id}` ناموفق بود.\n[{error.code}] {error.message}"


def format_panel_check(check: PanelCheck) -> str:
    if check.online:
        return f"- {check.panel.name}: online"
    return f"- {check.panel.name}: offline ({check.detail})"


def build_admin_router(
    *,
    admin_chat_id: int,
    subscriptions_repo: SubscriptionRepository,
    plans_repo: PlanRepository,
    panels_repo: PanelRepository,
    reconciler: StatusReconciler,
    panel_health: PanelHealthService,
) -> Router:
    router = Router(name="admin")

    def is_admin(chat_id: int) -> bool:
        return chat_id == admin_chat_id

    async def guard_admin(message: Message) -> bool:
        if not is_admin(message.from_user.id):
            await message.answer("این بخش فقط برای ادمین است.")
            return False
        return True

    async def guard_admin_callback(callback: CallbackQuery) -> bool:
        if not is_admin(callback.from_user.id):
            await callback.answer("این بخش فقط برای ادمین است.", show_alert=True)
            return False
        return True

    async def require_arg(message: Message, command: CommandObject, usage: str) -> str | None:
        arg = (command.args or "").strip()
        if not arg:
            await message.answer(f"فرمت درست: {usage}")
            return None
        return arg

    async def provision_and_report(message: Message, subscription_id: str) -> None:
        outcome = await reconciler.create_vpn(subscription_id)
        if outcome.ok:
            await message.answer(format_outcome(subscription_id, outcome))
            return
        await message.answer(
            format_outcome(subscription_id, outcome),
            reply_markup=create_vpn_keyboard(subscription_id),
        )

    async def approve_and_provision(message: Message, subscription_id: str) -> None:
        subscription = await subscriptions_repo.get_by_id(subscription_id)
        if subscription is None:
            await message.answer("اشتراک پیدا نشد.")
            return
        if not await subscriptions_repo.approve(subscription_id):
            await message.answer("این اشتراک قبلا رد شده و قابل تایید نیست.")
            return
        logger.info("Subscription %s approved by admin", subscription_id)
        await provision_and_report(message, subscription_id)

    async def reject_subscription(message: Message, subscription_id: str) -> None:
        if not await subscriptions_repo.reject(subscription_id):
            await message.answer("اشتراک پیدا نشد یا کانفیگ آن قبلا ساخته شده.")
            return
        logger.info("Subscription %s rejected by admin", subscription_id)
        await message.answer(f"اشتراک `{subscription_id}` رد شد.")

    @router.message(Command("admin"))
    async def admin_menu(message: Message) -> None:
        if not await guard_admin(message):
            return
        await message.answer(
            "پنل ادمین باز شد.\n"
            "/subs /sub <id> /approve <id> /reject <id> /createvpn <id> /plans /panels\n"
            "/testpanel [name] /syncinbounds <name>",
            reply_markup=admin_menu_keyboard(),
        )

    @router.message(Command("start"), F.from_user.id == admin_chat_id)
    async def admin_start_redirect(message: Message) -> None:
        await message.answer("شما ادمین هستید. منوی ادمین باز شد.", reply_markup=admin_menu_keyboard())

    @router.message(Command("subs"))
    @router.message(F.text == ADMIN_BUTTON_PENDING_SUBS)
    async def list_pending(message: Message) -> None:
        if not await guard_admin(message):
            return
        subscriptions = await subscriptions_repo.list_unprovisioned_approved()
        if not subscriptions:
            await message.answer("اشتراک تایید شده‌ی بدون کانفیگ وجود ندارد.")
            return
        lines = ["اشتراک‌های تایید شده بدون کانفیگ:"]
        for sub in subscriptions:
            lines.append(f"- {sub.id} {sub.username} plan={sub.plan_id or '-'} gb={sub.data_limit_gb} days={sub.duration_days}")
        lines.append("")
        lines.append("برای ساخت: /createvpn <id>")
        await message.answer("\n".join(lines))

    @router.message(Command("sub"))
    async def show_subscription(message: Message, command: CommandObject) -> None:
        if not await guard_admin(message):
            return
        subscription_id = await require_arg(message, command, "/sub <id>")
        if subscription_id is None:
            return
        subscription = await subscriptions_repo.get_by_id(subscription_id)
        if subscription is None:
            await message.answer("اشتراک پیدا نشد.")
            return
        decided = subscription.admin_decision != AdminDecision.PENDING.value
        markup = None
        if not subscription.vpn_user_created and not subscription.is_rejected:
            markup = subscription_actions_keyboard(subscription.id, decided=decided)
        await message.answer(format_subscription(subscription), reply_markup=markup)

    @router.message(Command("approve"))
    async def approve_command(message: Message, command: CommandObject) -> None:
        if not await guard_admin(message):
            return
        subscription_id = await require_arg(message, command, "/approve <id>")
        if subscription_id is None:
            return
        await approve_and_provision(message, subscription_id)

    @router.message(Command("reject"))
    async def reject_command(message: Message, command: CommandObject) -> None:
        if not await guard_admin(message):
            return
        subscription_id = await require_arg(message, command, "/reject <id>")
        if subscription_id is None:
            return
        await reject_subscription(message, subscription_id)

    @router.message(Command("createvpn"))
    async def create_vpn_command(message: Message, command: CommandObject) -> None:
        if not await guard_admin(message):
            return
        subscription_id = await require_arg(message, command, "/createvpn <id>")
        if subscription_id is None:
            return
        await provision_and_report(message, subscription_id)

    @router.callback_query(F.data.startswith(f"{CALLBACK_APPROVE}:"))
    async def approve_callback(callback: CallbackQuery) -> None:
        if not await guard_admin_callback(callback):
            return
        _, subscription_id = callback.data.split(":", 1)
        await callback.answer("در حال ساخت...")
        await approve_and_provision(callback.message, subscription_id)

    @router.callback_query(F.data.startswith(f"{CALLBACK_REJECT}:"))
    async def reject_callback(callback: CallbackQuery) -> None:
        if not await guard_admin_callback(callback):
            return
        _, subscription_id = callback.data.split(":", 1)
        await reject_subscription(callback.message, subscription_id)
        await callback.answer()

    @router.callback_query(F.data.startswith(f"{CALLBACK_CREATE_VPN}:"))
    async def create_vpn_callback(callback: CallbackQuery) -> None:
        if not await guard_admin_callback(callback):
            return
        _, subscription_id = callback.data.split(":", 1)
        await callback.answer("در حال ساخت...")
        await provision_and_report(callback.message, subscription_id)

    @router.message(Command("plans"))
    @router.message(F.text == ADMIN_BUTTON_LIST_PLANS)
    async def list_plans(message: Message) -> None:
        if not await guard_admin(message):
            return
        plans = await plans_repo.list_plans(active_only=False)
        if not plans:
            await message.answer("هیچ پلنی ثبت نشده.")
            return
        lines = ["پلن‌ها:"]
        for plan in plans:
            status = "on" if plan.active else "off"
            lines.append(
                f"- {plan.plan_identifier} ({status}) id={plan.id} api={plan.api_type} "
                f"panel={plan.assigned_panel_id or '-'} gb={plan.default_data_limit_gb} days={plan.default_duration_days}"
            )
        await message.answer("\n".join(lines))

    @router.message(Command("panels"))
    @router.message(F.text == ADMIN_BUTTON_LIST_PANELS)
    async def list_panels(message: Message) -> None:
        if not await guard_admin(message):
            return
        panels = await panels_repo.list_panels(active_only=False)
        if not panels:
            await message.answer("هیچ پنلی ثبت نشده.")
            return
        lines = ["پنل‌ها:"]
        for panel in panels:
            status = "on" if panel.active else "off"
            inbounds = ", ".join(f"{i.id}:{i.protocol}" for i in panel.default_inbounds) or "-"
            lines.append(
                f"- {panel.name} ({status}, {panel.health_status}) type={panel.type} "
                f"url={panel.base_url} inbounds=[{inbounds}]"
            )
        await message.answer("\n".join(lines))

    @router.message(Command("testpanel"))
    async def test_panel_command(message: Message, command: CommandObject) -> None:
        if not await guard_admin(message):
            return
        name = (command.args or "").strip()
        if name:
            panel = await panels_repo.get_by_name(name)
            if panel is None:
                await message.answer("پنل پیدا نشد.")
                return
            checks = [await panel_health.check(panel)]
        else:
            checks = await panel_health.check_all()
            if not checks:
                await message.answer("هیچ پنل فعالی ثبت نشده.")
                return
        lines = ["وضعیت پنل‌ها:"]
        lines.extend(format_panel_check(check) for check in checks)
        await message.answer("\n".join(lines))

    @router.message(Command("syncinbounds"))
    async def sync_inbounds_command(message: Message, command: CommandObject) -> None:
        if not await guard_admin(message):
            return
        name = await require_arg(message, command, "/syncinbounds <name>")
        if name is None:
            return
        panel = await panels_repo.get_by_name(name)
        if panel is None:
            await message.answer("پنل پیدا نشد.")
            return
        try:
            inbounds = await panel_health.refresh_inbounds(panel)
        except (PanelTransportError, PanelResponseError, CredentialError, ValueError) as exc:
            logger.warning("Refreshing inbounds of panel %s failed: %s", panel.name, exc)
            await message.answer(f"دریافت اینباندهای پنل {panel.name} ناموفق بود:\n{exc}")
            return
        listed = ", ".join(f"{i.id}:{i.tag}:{i.protocol}" for i in inbounds) or "-"
        await message.answer(f"اینباندهای پنل {panel.name} به‌روز شد: [{listed}]")

    return router
