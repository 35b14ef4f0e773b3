from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import quote

import httpx

from provisioner.models import Inbound, Panel


logger = logging.getLogger(__name__)

DEFAULT_PROTOCOLS = ["vless", "vmess", "trojan", "shadowsocks"]


class PanelTransportError(Exception):
    """Auth failure, non-2xx status or network error, normalized across providers."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return f"{self.provider}: {self.message}"
        return f"{self.provider} [{self.status_code}]: {self.message}"


class PanelResponseError(Exception):
    """A 2xx response whose payload does not match the provider's user schema."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message


class PanelConfigError(Exception):
    """The panel answers, but its setup cannot serve the request (e.g. no usable service)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message


@dataclass(slots=True)
class PanelUserRequest:
    username: str
    data_limit_gb: int
    duration_days: int
    notes: str
    panel_id: str
    enabled_protocols: list[str] = field(default_factory=list)
    subscription_id: str | None = None


@dataclass(slots=True)
class PanelUser:
    username: str
    subscription_url: str
    expire: int | None = None
    data_limit: int | None = None
    used_traffic: int | None = None
    status: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def require_text(provider: str, payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PanelResponseError(provider, f"Response is missing `{key}`")
    return value.strip()


def optional_int(provider: str, payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise PanelResponseError(provider, f"`{key}` must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise PanelResponseError(provider, f"`{key}` must be an integer") from exc


class PanelAdapter:
    """Shared HTTP plumbing for panels with an OAuth2 password-grant admin API."""

    provider = "panel"
    token_path = "/api/admin/token"
    system_info_path = "/api/system"

    def __init__(
        self,
        *,
        panel: Panel,
        password: str,
        verify_tls: bool,
        timeout_seconds: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.panel = panel
        self._clock = clock
        self.base_url = self._normalize_base_url(panel.base_url)
        self.username = panel.username
        self.password = password
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            verify=verify_tls,
            follow_redirects=True,
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": "vpn-provisioner/1.0"},
        )
        self._token: str | None = None

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def create_user(self, request: PanelUserRequest) -> PanelUser:
        raise NotImplementedError

    async def get_user(self, username: str) -> PanelUser:
        raise NotImplementedError

    async def update_user(self, username: str, *, data_limit_gb: int, duration_days: int) -> PanelUser:
        raise NotImplementedError

    async def list_inbounds(self) -> list[Inbound]:
        raise NotImplementedError

    async def test_connection(self) -> dict[str, Any]:
        """Log in and read the panel's system info; raises on any failure."""
        return await self._request_json("GET", self.system_info_path)

    async def _ensure_token(self) -> str:
        if self._token is None:
            self._token = await self._login()
        return self._token

    async def _login(self) -> str:
        try:
            response = await self._client.post(
                self._full_url(self.token_path),
                data={"username": self.username, "password": self.password, "grant_type": "password"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise PanelTransportError(self.provider, f"Login request failed: {exc}") from exc

        if response.status_code != 200:
            raise PanelTransportError(
                self.provider,
                f"Authentication failed: {self._error_detail(response)}",
                response.status_code,
            )

        try:
            data = self._parse_json(response)
        except PanelResponseError as exc:
            raise PanelTransportError(self.provider, f"Authentication failed: {exc.message}", response.status_code) from exc
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            raise PanelTransportError(self.provider, "Authentication response has no access_token", response.status_code)
        logger.debug("Authenticated against %s panel %s", self.provider, self.panel.name)
        return token

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        retry: bool = True,
    ) -> dict[str, Any]:
        token = await self._ensure_token()
        try:
            response = await self._client.request(
                method,
                self._full_url(path),
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise PanelTransportError(self.provider, f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401 and retry:
            self._token = None
            return await self._request_json(method, path, json_body=json_body, retry=False)

        if response.status_code == 409:
            raise PanelTransportError(
                self.provider,
                "This username is already taken. Please choose a different one",
                response.status_code,
            )

        if not 200 <= response.status_code < 300:
            raise PanelTransportError(self.provider, self._error_detail(response), response.status_code)

        return self._parse_json(response)

    def _parse_json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise PanelResponseError(self.provider, "Panel returned non-JSON response") from exc
        if not isinstance(data, dict):
            raise PanelResponseError(self.provider, "Unexpected panel JSON format")
        return data

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        """Flatten FastAPI style ``detail`` bodies into one line."""
        try:
            data = response.json()
        except ValueError:
            text = response.text.strip()
            return text or f"HTTP {response.status_code}"

        detail = data.get("detail") if isinstance(data, dict) else None
        if isinstance(detail, str):
            return detail
        if isinstance(detail, list):
            parts = []
            for item in detail:
                if not isinstance(item, dict):
                    continue
                loc = ".".join(str(p) for p in item.get("loc") or []) or "field"
                parts.append(f"{loc}: {item.get('msg', '')}")
            if parts:
                return "Validation error: " + ", ".join(parts)
        if detail is not None:
            return json.dumps(detail, ensure_ascii=False)
        return response.text.strip() or f"HTTP {response.status_code}"

    def _absolute_url(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        if not url.startswith("/"):
            url = "/" + url
        return f"{self.base_url}{url}"

    def _user_path(self, prefix: str, username: str) -> str:
        return f"{prefix}/{quote(username, safe='')}"

    def _full_url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _normalize_base_url(value: str) -> str:
        url = (value or "").strip()
        if not url:
            raise ValueError("Empty panel URL")
        if not url.startswith("http://") and not url.startswith("https://"):
            url = "https://" + url
        url = url.rstrip("/")
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise ValueError(f"Invalid panel URL `{url}`: {exc}") from exc
        if not parsed.host:
            raise ValueError(f"Invalid panel URL `{url}`: no host")
        return url
