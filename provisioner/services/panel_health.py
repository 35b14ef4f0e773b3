from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from provisioner.models import HealthStatus, Inbound, Panel
from provisioner.repositories.panels import PanelRepository
from provisioner.services.adapters.base import (
    PanelAdapter,
    PanelConfigError,
    PanelResponseError,
    PanelTransportError,
)
from provisioner.services.crypto import CredentialCipher, CredentialError
from provisioner.services.provisioning import ADAPTER_CLASSES


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PanelCheck:
    panel: Panel
    online: bool
    detail: str = ""
    info: dict[str, Any] = field(default_factory=dict, repr=False)


class PanelHealthService:
    """Probes panels for reachability and records the result on the panel row."""

    def __init__(
        self,
        *,
        panels_repo: PanelRepository,
        crypto: CredentialCipher,
        verify_tls: bool,
        timeout_seconds: int = 30,
        adapter_factory: Callable[[Panel, str], PanelAdapter] | None = None,
    ) -> None:
        self.panels_repo = panels_repo
        self.crypto = crypto
        self.verify_tls = verify_tls
        self.timeout_seconds = timeout_seconds
        self._adapter_factory = adapter_factory

    async def check(self, panel: Panel) -> PanelCheck:
        """Log in and read system info. Any failure marks the panel offline."""
        try:
            async with self._open_adapter(panel) as adapter:
                info = await adapter.test_connection()
        except (PanelTransportError, PanelResponseError, PanelConfigError, CredentialError, ValueError) as exc:
            logger.warning("Panel %s health check failed: %s", panel.name, exc)
            await self.panels_repo.set_health(panel.id, HealthStatus.OFFLINE.value)
            return PanelCheck(panel=panel, online=False, detail=str(exc))

        await self.panels_repo.set_health(panel.id, HealthStatus.ONLINE.value)
        logger.info("Panel %s is online", panel.name)
        return PanelCheck(panel=panel, online=True, info=info)

    async def check_all(self, active_only: bool = True) -> list[PanelCheck]:
        panels = await self.panels_repo.list_panels(active_only=active_only)
        return [await self.check(panel) for panel in panels]

    async def refresh_inbounds(self, panel: Panel) -> list[Inbound]:
        """Replace the panel's stored inbounds with what the panel reports.

        Errors propagate; the stored inbounds are left untouched on failure.
        """
        async with self._open_adapter(panel) as adapter:
            inbounds = await adapter.list_inbounds()
        await self.panels_repo.set_default_inbounds(panel.id, inbounds)
        logger.info("Panel %s inbounds refreshed: %s", panel.name, len(inbounds))
        return inbounds

    def _open_adapter(self, panel: Panel) -> PanelAdapter:
        adapter_cls = ADAPTER_CLASSES.get(panel.type)
        if adapter_cls is None:
            raise ValueError(f"Unsupported panel type `{panel.type}`")
        password = self.crypto.panel_password(panel)
        if self._adapter_factory is not None:
            return self._adapter_factory(panel, password)
        return adapter_cls(
            panel=panel,
            password=password,
            verify_tls=self.verify_tls,
            timeout_seconds=self.timeout_seconds,
        )
