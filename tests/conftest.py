from __future__ import annotations

from typing import Any

import pytest

from provisioner.db import Database
from provisioner.models import Inbound, Panel, PanelType
from provisioner.repositories.creation_logs import CreationLogRepository
from provisioner.repositories.panels import PanelRepository
from provisioner.repositories.plans import PlanRepository
from provisioner.repositories.subscriptions import SubscriptionRepository
from provisioner.repositories.test_users import TestUserRepository
from provisioner.services.adapters.base import PanelTransportError, PanelUser, PanelUserRequest
from provisioner.services.crypto import CredentialCipher


NOW = 1_700_000_000


class FakeAdapter:
    """Stands in for a panel adapter; records every call against its panel."""

    def __init__(self, factory: "FakeAdapterFactory", panel: Panel, password: str) -> None:
        self.factory = factory
        self.panel = panel
        self.password = password

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def create_user(self, request: PanelUserRequest) -> PanelUser:
        self.factory.calls.append(("create_user", self.panel.id, request))
        if self.factory.error is not None:
            raise self.factory.error
        response = self.factory.response
        if response is not None:
            return response
        return PanelUser(
            username=request.username,
            subscription_url=f"https://{self.panel.name}.example.com/sub/{request.username}",
            expire=NOW + request.duration_days * 86400,
            data_limit=request.data_limit_gb * 1024 ** 3,
        )

    async def get_user(self, username: str) -> PanelUser:
        self.factory.calls.append(("get_user", self.panel.id, username))
        if self.factory.error is not None:
            raise self.factory.error
        return PanelUser(
            username=username,
            subscription_url=f"https://{self.panel.name}.example.com/sub/{username}",
            expire=NOW + 86400,
            data_limit=5 * 1024 ** 3,
        )

    async def update_user(self, username: str, *, data_limit_gb: int, duration_days: int) -> PanelUser:
        self.factory.calls.append(("update_user", self.panel.id, username))
        if self.factory.error is not None:
            raise self.factory.error
        return PanelUser(
            username=username,
            subscription_url=f"https://{self.panel.name}.example.com/sub/{username}",
            expire=NOW + duration_days * 86400,
            data_limit=(5 + data_limit_gb) * 1024 ** 3,
        )

    async def test_connection(self) -> dict[str, Any]:
        self.factory.calls.append(("test_connection", self.panel.id, None))
        if self.factory.error is not None:
            raise self.factory.error
        return {"version": "0.4.9", "total_user": 3}

    async def list_inbounds(self) -> list[Inbound]:
        self.factory.calls.append(("list_inbounds", self.panel.id, None))
        if self.factory.error is not None:
            raise self.factory.error
        return list(self.factory.inbounds)


class FakeAdapterFactory:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.passwords: list[str] = []
        self.error: Exception | None = None
        self.response: PanelUser | None = None
        self.inbounds: list[Inbound] = [Inbound(id=1, tag="VLESS TCP", protocol="vless")]

    def __call__(self, panel: Panel, password: str) -> FakeAdapter:
        self.passwords.append(password)
        return FakeAdapter(self, panel, password)

    def fail_with(self, message: str, status_code: int | None = 500) -> None:
        self.error = PanelTransportError("fake", message, status_code)

    @property
    def panel_ids(self) -> list[str]:
        return [panel_id for _, panel_id, _ in self.calls]


@pytest.fixture
async def db(tmp_path) -> Database:
    database = Database(str(tmp_path / "provisioner.db"))
    await database.init()
    return database


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher("test-app-secret")


@pytest.fixture
def panels_repo(db) -> PanelRepository:
    return PanelRepository(db)


@pytest.fixture
def plans_repo(db) -> PlanRepository:
    return PlanRepository(db)


@pytest.fixture
def subscriptions_repo(db) -> SubscriptionRepository:
    return SubscriptionRepository(db)


@pytest.fixture
def test_users_repo(db) -> TestUserRepository:
    return TestUserRepository(db)


@pytest.fixture
def creation_logs(db) -> CreationLogRepository:
    return CreationLogRepository(db)


@pytest.fixture
def adapters() -> FakeAdapterFactory:
    return FakeAdapterFactory()


@pytest.fixture
def add_panel(panels_repo, cipher):
    async def _add(
        name: str,
        panel_type: str = PanelType.MARZBAN.value,
        *,
        active: bool = True,
        health_status: str = "online",
        inbounds: list[Inbound] | None = None,
        base_url: str | None = None,
    ) -> str:
        return await panels_repo.add(
            name=name,
            panel_type=panel_type,
            base_url=base_url or f"https://{name}.example.com",
            username="admin",
            password_enc=cipher.seal(f"{name}-password"),
            default_inbounds=inbounds,
            enabled_protocols=["vless", "vmess"],
            active=active,
            health_status=health_status,
        )

    return _add


@pytest.fixture
def add_plan(plans_repo):
    async def _add(slug: str, panel_id: str | None, *, api_type: str = "marzban", active: bool = True) -> str:
        return await plans_repo.create(
            plan_identifier=slug,
            name=slug.title(),
            api_type=api_type,
            assigned_panel_id=panel_id,
            active=active,
        )

    return _add
