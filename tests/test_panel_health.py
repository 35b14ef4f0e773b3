from __future__ import annotations

import httpx
import pytest

from provisioner.models import Inbound, PanelType
from provisioner.services.adapters.base import PanelTransportError
from provisioner.services.adapters.marzban import MarzbanAdapter
from provisioner.services.panel_health import PanelHealthService


@pytest.fixture
def health(panels_repo, cipher, adapters) -> PanelHealthService:
    return PanelHealthService(panels_repo=panels_repo, crypto=cipher, verify_tls=False, adapter_factory=adapters)


async def test_reachable_panel_is_recorded_online(health, panels_repo, adapters, add_panel) -> None:
    panel_id = await add_panel("p1", health_status="unknown")

    check = await health.check(await panels_repo.get_by_id(panel_id))

    assert check.online
    assert check.info["total_user"] == 3
    assert adapters.calls == [("test_connection", panel_id, None)]
    assert adapters.passwords == ["p1-password"]
    panel = await panels_repo.get_by_id(panel_id)
    assert panel.health_status == "online"


async def test_failed_login_is_recorded_offline(health, panels_repo, adapters, add_panel) -> None:
    panel_id = await add_panel("p1")
    adapters.fail_with("Authentication failed: Incorrect username or password", status_code=401)

    check = await health.check(await panels_repo.get_by_id(panel_id))

    assert not check.online
    assert "Incorrect username" in check.detail
    assert (await panels_repo.get_by_id(panel_id)).health_status == "offline"


async def test_malformed_url_is_recorded_offline(panels_repo, cipher, add_panel) -> None:
    health = PanelHealthService(panels_repo=panels_repo, crypto=cipher, verify_tls=False)
    panel_id = await add_panel("p1", base_url="https://p1.example.com:abc")

    check = await health.check(await panels_repo.get_by_id(panel_id))

    assert not check.online
    assert "Invalid panel URL" in check.detail
    assert (await panels_repo.get_by_id(panel_id)).health_status == "offline"


async def test_unsupported_type_is_recorded_offline(health, panels_repo, adapters, add_panel) -> None:
    panel_id = await add_panel("p1", "3x-ui")

    check = await health.check(await panels_repo.get_by_id(panel_id))

    assert not check.online
    assert adapters.calls == []
    assert (await panels_repo.get_by_id(panel_id)).health_status == "offline"


async def test_check_all_skips_inactive_panels(health, adapters, add_panel) -> None:
    active_id = await add_panel("p1")
    await add_panel("p2", active=False)

    checks = await health.check_all()

    assert [check.panel.id for check in checks] == [active_id]
    assert adapters.panel_ids == [active_id]


async def test_real_adapter_check_reads_system_endpoint(panels_repo, cipher, add_panel) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/api/admin/token":
            return httpx.Response(200, json={"access_token": "tok", "token_type": "bearer"})
        return httpx.Response(200, json={"version": "0.8.4"})

    def factory(panel, password):
        return MarzbanAdapter(panel=panel, password=password, verify_tls=False, transport=httpx.MockTransport(handler))

    health = PanelHealthService(panels_repo=panels_repo, crypto=cipher, verify_tls=False, adapter_factory=factory)
    panel_id = await add_panel("p1", health_status="offline")

    check = await health.check(await panels_repo.get_by_id(panel_id))

    assert check.online
    assert seen == ["/api/admin/token", "/api/system"]
    assert (await panels_repo.get_by_id(panel_id)).health_status == "online"


async def test_refresh_inbounds_replaces_stored_list(health, panels_repo, adapters, add_panel) -> None:
    panel_id = await add_panel("p2", PanelType.MARZNESHIN.value, inbounds=[Inbound(id=9, tag="Old", protocol="vmess")])
    adapters.inbounds = [Inbound(id=3, tag="VLESS TCP", protocol="vless"), Inbound(id=4, tag="Trojan", protocol="trojan")]

    inbounds = await health.refresh_inbounds(await panels_repo.get_by_id(panel_id))

    assert inbounds == adapters.inbounds
    assert (await panels_repo.get_by_id(panel_id)).default_inbounds == adapters.inbounds


async def test_refresh_inbounds_failure_keeps_stored_list(health, panels_repo, adapters, add_panel) -> None:
    stored = [Inbound(id=9, tag="Old", protocol="vmess")]
    panel_id = await add_panel("p2", PanelType.MARZNESHIN.value, inbounds=stored)
    adapters.fail_with("panel down", status_code=503)

    with pytest.raises(PanelTransportError):
        await health.refresh_inbounds(await panels_repo.get_by_id(panel_id))

    assert (await panels_repo.get_by_id(panel_id)).default_inbounds == stored
