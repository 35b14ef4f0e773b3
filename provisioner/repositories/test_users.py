from __future__ import annotations

import logging
import sqlite3
import time
import uuid

from provisioner.db import Database
from provisioner.models import TestUser


logger = logging.getLogger(__name__)


class TestUserRepository:
    __test__ = False

    def __init__(self, db: Database) -> None:
        self.db = db

    async def has_prior_trial(
        self,
        *,
        email: str,
        phone_number: str,
        device_fingerprint: str | None,
    ) -> bool:
        """A trial is allowed once per email, per phone number and per device."""
        if device_fingerprint:
            row = await self.db.fetchone(
                """
                SELECT 1 FROM test_users
                WHERE lower(email) = lower(?) OR phone_number = ? OR device_fingerprint = ?
                LIMIT 1
                """,
                (email, phone_number, device_fingerprint),
            )
        else:
            row = await self.db.fetchone(
                "SELECT 1 FROM test_users WHERE lower(email) = lower(?) OR phone_number = ? LIMIT 1",
                (email, phone_number),
            )
        return row is not None

    async def record(
        self,
        *,
        username: str,
        email: str,
        phone_number: str,
        device_fingerprint: str | None,
        panel_id: str | None,
        panel_name: str,
        subscription_url: str | None,
        data_limit_bytes: int,
        expire_at: int,
    ) -> bool:
        """Insert the trial row. Returns False when the row already existed."""
        try:
            await self.db.execute(
                """
                INSERT INTO test_users(
                    id, username, email, phone_number, device_fingerprint, panel_id, panel_name,
                    subscription_url, data_limit_bytes, expire_at, status, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?)
                """,
                (
                    str(uuid.uuid4()),
                    username,
                    email,
                    phone_number,
                    device_fingerprint,
                    panel_id,
                    panel_name,
                    subscription_url,
                    data_limit_bytes,
                    expire_at,
                    int(time.time()),
                ),
            )
        except sqlite3.IntegrityError:
            logger.info("Test user %s already recorded for %s; keeping existing row", username, email)
            return False
        return True

    async def list_recent(self, limit: int = 20) -> list[TestUser]:
        rows = await self.db.fetchall(
            "SELECT * FROM test_users ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_test_user(r) for r in rows if r is not None]

    @staticmethod
    def _row_to_test_user(row) -> TestUser | None:
        if row is None:
            return None
        return TestUser(
            id=str(row["id"]),
            username=str(row["username"]),
            email=str(row["email"]),
            phone_number=str(row["phone_number"]),
            device_fingerprint=row["device_fingerprint"],
            panel_id=row["panel_id"],
            panel_name=str(row["panel_name"]),
            subscription_url=row["subscription_url"],
            data_limit_bytes=int(row["data_limit_bytes"]),
            expire_at=int(row["expire_at"]),
            status=str(row["status"] or "active"),
        )
