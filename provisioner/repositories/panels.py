from __future__ import annotations

import json
import time
import uuid

from provisioner.db import Database
from provisioner.models import HealthStatus, Inbound, Panel


class PanelRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(
        self,
        *,
        name: str,
        panel_type: str,
        base_url: str,
        username: str,
        password_enc: str,
        default_inbounds: list[Inbound] | None = None,
        enabled_protocols: list[str] | None = None,
        country: str = "",
        active: bool = True,
        health_status: str = HealthStatus.UNKNOWN.value,
    ) -> str:
        panel_id = str(uuid.uuid4())
        now = int(time.time())
        await self.db.execute(
            """
            INSERT INTO panels(
                id, name, type, base_url, username, password_enc, country,
                active, health_status, default_inbounds, enabled_protocols, created_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                panel_id,
                name,
                panel_type,
                base_url,
                username,
                password_enc,
                country,
                1 if active else 0,
                health_status,
                self._dump_inbounds(default_inbounds or []),
                json.dumps(enabled_protocols or []),
                now,
            ),
        )
        return panel_id

    async def get_by_id(self, panel_id: str) -> Panel | None:
        row = await self.db.fetchone("SELECT * FROM panels WHERE id = ?", (panel_id,))
        return self.row_to_panel(row)

    async def get_by_name(self, name: str) -> Panel | None:
        row = await self.db.fetchone("SELECT * FROM panels WHERE name = ?", (name,))
        return self.row_to_panel(row)

    async def list_panels(self, active_only: bool = False) -> list[Panel]:
        if active_only:
            rows = await self.db.fetchall("SELECT * FROM panels WHERE active = 1 ORDER BY name ASC")
        else:
            rows = await self.db.fetchall("SELECT * FROM panels ORDER BY name ASC")
        return [self.row_to_panel(r) for r in rows if r is not None]

    async def set_active(self, panel_id: str, active: bool) -> None:
        await self.db.execute("UPDATE panels SET active = ? WHERE id = ?", (1 if active else 0, panel_id))

    async def set_health(self, panel_id: str, health_status: str) -> None:
        await self.db.execute(
            "UPDATE panels SET health_status = ?, last_health_check = ? WHERE id = ?",
            (health_status, int(time.time()), panel_id),
        )

    async def set_default_inbounds(self, panel_id: str, inbounds: list[Inbound]) -> None:
        await self.db.execute(
            "UPDATE panels SET default_inbounds = ? WHERE id = ?",
            (self._dump_inbounds(inbounds), panel_id),
        )

    @staticmethod
    def _dump_inbounds(inbounds: list[Inbound]) -> str:
        return json.dumps([{"id": i.id, "tag": i.tag, "protocol": i.protocol} for i in inbounds])

    @staticmethod
    def _load_inbounds(raw: str | None) -> list[Inbound]:
        try:
            items = json.loads(raw or "[]")
        except json.JSONDecodeError:
            return []
        if not isinstance(items, list):
            return []
        inbounds: list[Inbound] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                inbound_id = int(item.get("id"))
            except (TypeError, ValueError):
                continue
            inbounds.append(
                Inbound(
                    id=inbound_id,
                    tag=str(item.get("tag") or ""),
                    protocol=str(item.get("protocol") or "").lower(),
                )
            )
        return inbounds

    @staticmethod
    def _load_protocols(raw: str | None) -> list[str]:
        try:
            items = json.loads(raw or "[]")
        except json.JSONDecodeError:
            return []
        if not isinstance(items, list):
            return []
        return [str(p).strip().lower() for p in items if str(p).strip()]

    @classmethod
    def row_to_panel(cls, row, prefix: str = "") -> Panel | None:
        """Build a Panel from a row; ``prefix`` selects aliased columns of a join."""
        if row is None or row[f"{prefix}id"] is None:
            return None
        return Panel(
            id=str(row[f"{prefix}id"]),
            name=str(row[f"{prefix}name"]),
            type=str(row[f"{prefix}type"]).lower(),
            base_url=str(row[f"{prefix}base_url"]),
            username=str(row[f"{prefix}username"]),
            password_enc=str(row[f"{prefix}password_enc"]),
            active=bool(row[f"{prefix}active"]),
            health_status=str(row[f"{prefix}health_status"] or HealthStatus.UNKNOWN.value).lower(),
            default_inbounds=cls._load_inbounds(row[f"{prefix}default_inbounds"]),
            enabled_protocols=cls._load_protocols(row[f"{prefix}enabled_protocols"]),
            country=str(row[f"{prefix}country"] or ""),
        )
