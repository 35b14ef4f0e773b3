from __future__ import annotations

from provisioner.bot.handlers_admin import build_admin_router, format_outcome, format_panel_check, format_subscription
from provisioner.bot.keyboards import create_vpn_keyboard, subscription_actions_keyboard
from provisioner.errors import PanelOffline
from provisioner.models import Panel, ProvisioningResult, Subscription
from provisioner.services.panel_health import PanelCheck
from provisioner.services.provisioning import ProvisioningOutcome


def _subscription(**overrides) -> Subscription:
    values = dict(
        id="sub-1",
        username="alice",
        plan_id="plan-1",
        data_limit_gb=10,
        duration_days=30,
        status="active",
        admin_decision="approved",
        vpn_user_created=False,
        subscription_url=None,
        expire_at=None,
        provisioning_claimed_at=None,
        email=None,
        mobile="",
        notes=None,
    )
    values.update(overrides)
    return Subscription(**values)


def _panel() -> Panel:
    return Panel(
        id="panel-1",
        name="p1",
        type="marzneshin",
        base_url="https://p1.example.com",
        username="admin",
        password_enc="unused",
        active=True,
        health_status="online",
        default_inbounds=[],
        enabled_protocols=[],
    )


def test_failed_outcome_names_error_code() -> None:
    outcome = ProvisioningOutcome(error=PanelOffline("Panel `p1` assigned to plan `lite` is offline"))

    text = format_outcome("sub-1", outcome)

    assert "[panel_offline]" in text
    assert "p1" in text


def test_successful_outcome_shows_link() -> None:
    result = ProvisioningResult(
        username="alice",
        subscription_url="https://p1.example.com/sub/alice",
        expire=0,
        data_limit_bytes=1,
        panel_type="marzban",
        panel_name="p1",
        panel_id="panel-1",
        panel_url="https://p1.example.com",
    )

    text = format_outcome("sub-1", ProvisioningOutcome(result=result))

    assert "https://p1.example.com/sub/alice" in text
    assert "p1 (marzban)" in text


def test_subscription_summary() -> None:
    text = format_subscription(
        _subscription(vpn_user_created=True, subscription_url="https://p1/sub", expire_at=1_700_000_000)
    )

    assert "vpn_created=yes" in text
    assert "https://p1/sub" in text
    assert "2023-11-14" in text


def test_panel_check_lines() -> None:
    online = PanelCheck(panel=_panel(), online=True)
    offline = PanelCheck(panel=_panel(), online=False, detail="marzneshin [401]: Authentication failed")

    assert format_panel_check(online) == "- p1: online"
    assert format_panel_check(offline) == "- p1: offline (marzneshin [401]: Authentication failed)"


def test_keyboards_carry_subscription_id() -> None:
    retry = create_vpn_keyboard("sub-1")
    actions = subscription_actions_keyboard("sub-1", decided=False)

    assert retry.inline_keyboard[0][0].callback_data == "createvpn:sub-1"
    callbacks = [button.callback_data for row in actions.inline_keyboard for button in row]
    assert callbacks == ["sub_approve:sub-1", "sub_reject:sub-1"]


async def test_router_builds(subscriptions_repo, plans_repo, panels_repo) -> None:
    router = build_admin_router(
        admin_chat_id=42,
        subscriptions_repo=subscriptions_repo,
        plans_repo=plans_repo,
        panels_repo=panels_repo,
        reconciler=None,
        panel_health=None,
    )

    assert router.name == "admin"
