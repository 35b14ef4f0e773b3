from __future__ import annotations

import time
import uuid

from provisioner.db import Database
from provisioner.models import Panel, Plan
from provisioner.repositories.panels import PanelRepository


_PLAN_WITH_PANEL_SQL = """
SELECT
  pl.*,
  pn.id AS panel_id,
  pn.name AS panel_name,
  pn.type AS panel_type,
  pn.base_url AS panel_base_url,
  pn.username AS panel_username,
  pn.password_enc AS panel_password_enc,
  pn.country AS panel_country,
  pn.active AS panel_active,
  pn.health_status AS panel_health_status,
  pn.default_inbounds AS panel_default_inbounds,
  pn.enabled_protocols AS panel_enabled_protocols
FROM plans pl
LEFT JOIN panels pn ON pn.id = pl.assigned_panel_id
WHERE pl.id = ? AND pl.active = 1
"""


class PlanRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(
        self,
        *,
        plan_identifier: str,
        name: str,
        api_type: str,
        assigned_panel_id: str | None,
        price_per_gb: int = 0,
        default_data_limit_gb: int = 10,
        default_duration_days: int = 30,
        active: bool = True,
    ) -> str:
        plan_id = str(uuid.uuid4())
        await self.db.execute(
            """
            INSERT INTO plans(
                id, plan_identifier, name, api_type, assigned_panel_id, price_per_gb,
                default_data_limit_gb, default_duration_days, active, created_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                plan_id,
                plan_identifier,
                name,
                api_type,
                assigned_panel_id,
                price_per_gb,
                default_data_limit_gb,
                default_duration_days,
                1 if active else 0,
                int(time.time()),
            ),
        )
        return plan_id

    async def get_by_id(self, plan_id: str) -> Plan | None:
        row = await self.db.fetchone("SELECT * FROM plans WHERE id = ?", (plan_id,))
        return self._row_to_plan(row)

    async def get_by_slug(self, plan_identifier: str, active_only: bool = True) -> Plan | None:
        sql = "SELECT * FROM plans WHERE plan_identifier = ?"
        if active_only:
            sql += " AND active = 1"
        row = await self.db.fetchone(sql, (plan_identifier,))
        return self._row_to_plan(row)

    async def get_active_with_panel(self, plan_id: str) -> tuple[Plan, Panel | None] | None:
        """Return the active plan and its assigned panel in one read.

        The panel is ``None`` when the plan has no assignment or the assigned
        row no longer exists. Returns ``None`` when the plan is missing or inactive.
        """
        row = await self.db.fetchone(_PLAN_WITH_PANEL_SQL, (plan_id,))
        plan = self._row_to_plan(row)
        if plan is None:
            return None
        return plan, PanelRepository.row_to_panel(row, prefix="panel_")

    async def list_plans(self, active_only: bool = False) -> list[Plan]:
        if active_only:
            rows = await self.db.fetchall("SELECT * FROM plans WHERE active = 1 ORDER BY plan_identifier ASC")
        else:
            rows = await self.db.fetchall("SELECT * FROM plans ORDER BY plan_identifier ASC")
        return [self._row_to_plan(r) for r in rows if r is not None]

    async def assign_panel(self, plan_id: str, panel_id: str | None) -> None:
        await self.db.execute("UPDATE plans SET assigned_panel_id = ? WHERE id = ?", (panel_id, plan_id))

    async def set_active(self, plan_id: str, active: bool) -> None:
        await self.db.execute("UPDATE plans SET active = ? WHERE id = ?", (1 if active else 0, plan_id))

    @staticmethod
    def _row_to_plan(row) -> Plan | None:
        if row is None:
            return None
        assigned = row["assigned_panel_id"]
        return Plan(
            id=str(row["id"]),
            plan_identifier=str(row["plan_identifier"]),
            name=str(row["name"]),
            api_type=str(row["api_type"]),
            assigned_panel_id=str(assigned) if assigned else None,
            price_per_gb=int(row["price_per_gb"]),
            default_data_limit_gb=int(row["default_data_limit_gb"]),
            default_duration_days=int(row["default_duration_days"]),
            active=bool(row["active"]),
        )
