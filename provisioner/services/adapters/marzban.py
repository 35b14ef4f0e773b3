from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from provisioner.models import GIB, SECONDS_PER_DAY, Inbound
from provisioner.services.adapters.base import (
    DEFAULT_PROTOCOLS,
    PanelAdapter,
    PanelResponseError,
    PanelUser,
    PanelUserRequest,
    optional_int,
    require_text,
)


@dataclass(slots=True)
class MarzbanUserResponse:
    username: str
    subscription_url: str
    expire: int | None
    data_limit: int | None
    used_traffic: int | None
    status: str | None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MarzbanUserResponse":
        expire = optional_int(MarzbanAdapter.provider, payload, "expire")
        status = payload.get("status")
        return cls(
            username=require_text(MarzbanAdapter.provider, payload, "username"),
            subscription_url=require_text(MarzbanAdapter.provider, payload, "subscription_url"),
            # Marzban reports "never expires" as 0 or null.
            expire=expire or None,
            data_limit=optional_int(MarzbanAdapter.provider, payload, "data_limit"),
            used_traffic=optional_int(MarzbanAdapter.provider, payload, "used_traffic"),
            status=str(status) if status is not None else None,
        )


class MarzbanAdapter(PanelAdapter):
    provider = "marzban"
    token_path = "/api/admin/token"

    async def create_user(self, request: PanelUserRequest) -> PanelUser:
        now = int(self._clock())
        proxies, inbounds = self._build_proxy_config(request.enabled_protocols)
        payload: dict[str, Any] = {
            "username": request.username,
            "proxies": proxies,
            "data_limit": request.data_limit_gb * GIB,
            "expire": now + request.duration_days * SECONDS_PER_DAY,
            "data_limit_reset_strategy": "no_reset",
            "status": "active",
            "note": request.notes,
        }
        if inbounds:
            payload["inbounds"] = inbounds

        data = await self._request_json("POST", "/api/user", json_body=payload)
        return self._to_panel_user(data)

    async def get_user(self, username: str) -> PanelUser:
        data = await self._request_json("GET", self._user_path("/api/user", username))
        return self._to_panel_user(data)

    async def update_user(self, username: str, *, data_limit_gb: int, duration_days: int) -> PanelUser:
        current = await self.get_user(username)
        now = int(self._clock())
        base_expire = max(now, current.expire or now)
        payload = {
            "data_limit": (current.data_limit or 0) + data_limit_gb * GIB,
            "expire": base_expire + duration_days * SECONDS_PER_DAY,
            "status": "active",
        }
        data = await self._request_json("PUT", self._user_path("/api/user", username), json_body=payload)
        return self._to_panel_user(data)

    async def list_inbounds(self) -> list[Inbound]:
        """Inbounds grouped by protocol, as ``GET /api/inbounds`` returns them.

        Marzban addresses inbounds by tag only, so ids are positions in the listing.
        """
        data = await self._request_json("GET", "/api/inbounds")
        inbounds: list[Inbound] = []
        for protocol, items in data.items():
            if not isinstance(items, list):
                raise PanelResponseError(self.provider, "Invalid inbounds response")
            for item in items:
                if isinstance(item, dict) and item.get("tag"):
                    inbounds.append(
                        Inbound(
                            id=len(inbounds) + 1,
                            tag=str(item["tag"]),
                            protocol=str(item.get("protocol") or protocol).lower(),
                        )
                    )
        return inbounds

    def _build_proxy_config(self, requested: list[str]) -> tuple[dict[str, dict], dict[str, list[str]]]:
        """Map protocols to Marzban ``proxies`` and inbound tags to ``inbounds``.

        Protocols come from the request, then the panel record, then the defaults.
        Only inbounds whose protocol is enabled are sent.
        """
        protocols = [p.lower() for p in (requested or self.panel.enabled_protocols or DEFAULT_PROTOCOLS)]
        tags_by_protocol: dict[str, list[str]] = defaultdict(list)
        for inbound in self.panel.default_inbounds:
            if inbound.protocol in protocols and inbound.tag:
                tags_by_protocol[inbound.protocol].append(inbound.tag)

        if tags_by_protocol:
            protocols = [p for p in protocols if p in tags_by_protocol]

        proxies = {p: ({"flow": ""} if p == "vless" else {}) for p in protocols}
        return proxies, dict(tags_by_protocol)

    def _to_panel_user(self, data: dict[str, Any]) -> PanelUser:
        decoded = MarzbanUserResponse.from_payload(data)
        return PanelUser(
            username=decoded.username,
            subscription_url=self._absolute_url(decoded.subscription_url),
            expire=decoded.expire,
            data_limit=decoded.data_limit,
            used_traffic=decoded.used_traffic,
            status=decoded.status,
            raw=data,
        )
