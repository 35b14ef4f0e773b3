from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from provisioner.models import GIB, SECONDS_PER_DAY, Inbound
from provisioner.services.adapters.base import (
    DEFAULT_PROTOCOLS,
    PanelAdapter,
    PanelConfigError,
    PanelResponseError,
    PanelUser,
    PanelUserRequest,
    optional_int,
    require_text,
)


logger = logging.getLogger(__name__)


def _parse_expire_date(value: Any) -> int | None:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise PanelResponseError(MarzneshinAdapter.provider, "`expire_date` must be an ISO datetime")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise PanelResponseError(MarzneshinAdapter.provider, "`expire_date` must be an ISO datetime") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


@dataclass(slots=True)
class MarzneshinUserResponse:
    username: str
    subscription_url: str
    expire_date: int | None
    data_limit: int | None
    used_traffic: int | None
    enabled: bool | None
    service_ids: list[int]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MarzneshinUserResponse":
        provider = MarzneshinAdapter.provider
        service_ids = payload.get("service_ids") or []
        if not isinstance(service_ids, list):
            raise PanelResponseError(provider, "`service_ids` must be a list")
        return cls(
            username=require_text(provider, payload, "username"),
            subscription_url=require_text(provider, payload, "subscription_url"),
            expire_date=_parse_expire_date(payload.get("expire_date")),
            data_limit=optional_int(provider, payload, "data_limit"),
            used_traffic=optional_int(provider, payload, "used_traffic"),
            enabled=bool(payload["enabled"]) if payload.get("enabled") is not None else None,
            service_ids=[int(s) for s in service_ids if isinstance(s, int) and not isinstance(s, bool)],
        )


class MarzneshinAdapter(PanelAdapter):
    provider = "marzneshin"
    token_path = "/api/admins/token"
    system_info_path = "/api/system/stats/users"

    async def create_user(self, request: PanelUserRequest) -> PanelUser:
        service_ids = await self._resolve_service_ids()
        protocols = request.enabled_protocols or self.panel.enabled_protocols or DEFAULT_PROTOCOLS
        note = request.notes or ""
        if protocols:
            note = f"{note} - Protocols: {', '.join(protocols)}".strip(" -")
        payload = {
            "username": request.username,
            "service_ids": service_ids,
            "data_limit": request.data_limit_gb * GIB,
            "data_limit_reset_strategy": "no_reset",
            "expire_strategy": "start_on_first_use",
            "usage_duration": request.duration_days * SECONDS_PER_DAY,
            "note": note,
        }
        data = await self._request_json("POST", "/api/users", json_body=payload)
        return self._to_panel_user(data)

    async def get_user(self, username: str) -> PanelUser:
        data = await self._request_json("GET", self._user_path("/api/users", username))
        return self._to_panel_user(data)

    async def update_user(self, username: str, *, data_limit_gb: int, duration_days: int) -> PanelUser:
        current = await self.get_user(username)
        now = int(self._clock())
        base_expire = max(now, current.expire or now)
        new_expire = base_expire + duration_days * SECONDS_PER_DAY
        payload = {
            "username": username,
            "data_limit": (current.data_limit or 0) + data_limit_gb * GIB,
            "expire_strategy": "fixed_date",
            "expire_date": datetime.fromtimestamp(new_expire, tz=timezone.utc).isoformat(),
        }
        data = await self._request_json("PUT", self._user_path("/api/users", username), json_body=payload)
        return self._to_panel_user(data)

    async def list_inbounds(self) -> list[Inbound]:
        data = await self._request_json("GET", "/api/inbounds")
        items = data.get("items")
        if not isinstance(items, list):
            raise PanelResponseError(self.provider, "Invalid inbounds response")
        inbounds: list[Inbound] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                inbound_id = int(item["id"])
            except (KeyError, TypeError, ValueError):
                continue
            inbounds.append(
                Inbound(id=inbound_id, tag=str(item.get("tag") or ""), protocol=str(item.get("protocol") or "").lower())
            )
        return inbounds

    async def _resolve_service_ids(self) -> list[int]:
        """Services on the panel that expose at least one of the configured inbounds."""
        wanted = {inbound.id for inbound in self.panel.default_inbounds}
        data = await self._request_json("GET", "/api/services")
        items = data.get("items")
        if not isinstance(items, list):
            raise PanelResponseError(self.provider, "Invalid services response")

        service_ids: list[int] = []
        for service in items:
            if not isinstance(service, dict):
                continue
            inbound_ids = service.get("inbound_ids") or []
            if wanted.intersection(i for i in inbound_ids if isinstance(i, int)):
                try:
                    service_ids.append(int(service["id"]))
                except (KeyError, TypeError, ValueError):
                    continue

        if not service_ids:
            raise PanelConfigError(
                self.provider,
                f"No service on panel `{self.panel.name}` covers inbounds {sorted(wanted)}",
            )
        logger.debug("Panel %s: using services %s", self.panel.name, service_ids)
        return service_ids

    def _to_panel_user(self, data: dict[str, Any]) -> PanelUser:
        decoded = MarzneshinUserResponse.from_payload(data)
        return PanelUser(
            username=decoded.username,
            subscription_url=self._absolute_url(decoded.subscription_url),
            expire=decoded.expire_date,
            data_limit=decoded.data_limit,
            used_traffic=decoded.used_traffic,
            status=None if decoded.enabled is None else ("active" if decoded.enabled else "disabled"),
            raw=data,
        )
