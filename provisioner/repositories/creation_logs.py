from __future__ import annotations

import json
import time
from typing import Any

from provisioner.db import Database


class CreationLogRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(
        self,
        *,
        adapter: str,
        request_data: dict[str, Any],
        success: bool,
        subscription_id: str | None = None,
        panel_id: str | None = None,
        panel_name: str | None = None,
        panel_url: str | None = None,
        response_data: dict[str, Any] | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        await self.db.execute(
            """
            INSERT INTO user_creation_logs(
                subscription_id, panel_id, panel_name, panel_url, adapter, request_data,
                response_data, success, error_code, error_message, created_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription_id,
                panel_id,
                panel_name,
                panel_url,
                adapter,
                json.dumps(request_data, ensure_ascii=False, default=str),
                json.dumps(response_data, ensure_ascii=False, default=str) if response_data is not None else None,
                1 if success else 0,
                error_code,
                error_message,
                int(time.time()),
            ),
        )

    async def list_for_subscription(self, subscription_id: str) -> list[dict[str, Any]]:
        rows = await self.db.fetchall(
            "SELECT * FROM user_creation_logs WHERE subscription_id = ? ORDER BY id ASC",
            (subscription_id,),
        )
        return [
            {
                "panel_id": r["panel_id"],
                "panel_name": r["panel_name"],
                "adapter": r["adapter"],
                "success": bool(r["success"]),
                "error_code": r["error_code"],
                "error_message": r["error_message"],
                "request_data": json.loads(r["request_data"]),
                "created_at": int(r["created_at"]),
            }
            for r in rows
        ]
