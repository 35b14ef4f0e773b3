from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class AppConfig:
    bot_token: str
    admin_chat_id: int
    app_secret: str
    database_path: str
    panel_verify_tls: bool
    request_timeout: int
    free_trial_enabled: bool
    provisioning_claim_ttl: int
    log_level: str


def _to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def load_config() -> AppConfig:
    load_dotenv()

    bot_token = os.getenv("BOT_TOKEN", "").strip()
    admin_chat_id_raw = os.getenv("ADMIN_CHAT_ID", "").strip()
    app_secret = os.getenv("APP_SECRET", "").strip()
    database_path = os.getenv("DATABASE_PATH", "/var/lib/vpn-provisioner/provisioner.db").strip()

    if not bot_token:
        raise ValueError("BOT_TOKEN is required")
    if not admin_chat_id_raw:
        raise ValueError("ADMIN_CHAT_ID is required")
    if not app_secret:
        raise ValueError("APP_SECRET is required")

    try:
        admin_chat_id = int(admin_chat_id_raw)
    except ValueError as exc:
        raise ValueError("ADMIN_CHAT_ID must be an integer") from exc

    claim_ttl = _to_int("PROVISIONING_CLAIM_TTL", 900)
    if claim_ttl <= 0:
        raise ValueError("PROVISIONING_CLAIM_TTL must be positive")

    return AppConfig(
        bot_token=bot_token,
        admin_chat_id=admin_chat_id,
        app_secret=app_secret,
        database_path=database_path,
        panel_verify_tls=_to_bool(os.getenv("PANEL_VERIFY_TLS"), default=False),
        request_timeout=_to_int("REQUEST_TIMEOUT", 30),
        free_trial_enabled=_to_bool(os.getenv("FREE_TRIAL_ENABLED"), default=False),
        provisioning_claim_ttl=claim_ttl,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
