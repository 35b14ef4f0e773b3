from __future__ import annotations

import time
import uuid

from provisioner.db import Database
from provisioner.models import AdminDecision, Subscription, SubscriptionStatus


_UPDATABLE_COLUMNS = {
    "status",
    "admin_decision",
    "subscription_url",
    "vpn_user_created",
    "expire_at",
    "notes",
}


class SubscriptionRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(
        self,
        *,
        username: str,
        plan_id: str | None,
        data_limit_gb: int,
        duration_days: int,
        mobile: str = "",
        email: str | None = None,
        notes: str | None = None,
        status: str = SubscriptionStatus.PENDING.value,
    ) -> str:
        subscription_id = str(uuid.uuid4())
        now = int(time.time())
        await self.db.execute(
            """
            INSERT INTO subscriptions(
                id, username, plan_id, data_limit_gb, duration_days, status, admin_decision,
                email, mobile, notes, created_at, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription_id,
                username,
                plan_id,
                data_limit_gb,
                duration_days,
                status,
                AdminDecision.PENDING.value,
                email,
                mobile,
                notes,
                now,
                now,
            ),
        )
        return subscription_id

    async def get_by_id(self, subscription_id: str) -> Subscription | None:
        row = await self.db.fetchone("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        return self._row_to_subscription(row)

    async def list_unprovisioned_approved(self, limit: int = 50) -> list[Subscription]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM subscriptions
            WHERE status = ? AND admin_decision = ? AND vpn_user_created = 0
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (SubscriptionStatus.ACTIVE.value, AdminDecision.APPROVED.value, limit),
        )
        return [self._row_to_subscription(r) for r in rows if r is not None]

    async def update(self, subscription_id: str, **fields) -> None:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        if "vpn_user_created" in fields:
            fields["vpn_user_created"] = 1 if fields["vpn_user_created"] else 0
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = tuple(fields.values()) + (int(time.time()), subscription_id)
        await self.db.execute(
            f"UPDATE subscriptions SET {assignments}, updated_at = ? WHERE id = ?",
            params,
        )

    async def approve(self, subscription_id: str) -> bool:
        now = int(time.time())
        changed = await self.db.execute(
            """
            UPDATE subscriptions
            SET status = ?, admin_decision = ?, admin_decided_at = ?, updated_at = ?
            WHERE id = ? AND admin_decision != ?
            """,
            (
                SubscriptionStatus.ACTIVE.value,
                AdminDecision.APPROVED.value,
                now,
                now,
                subscription_id,
                AdminDecision.REJECTED.value,
            ),
        )
        return changed > 0

    async def reject(self, subscription_id: str) -> bool:
        now = int(time.time())
        changed = await self.db.execute(
            """
            UPDATE subscriptions
            SET admin_decision = ?, admin_decided_at = ?, updated_at = ?
            WHERE id = ? AND vpn_user_created = 0
            """,
            (AdminDecision.REJECTED.value, now, now, subscription_id),
        )
        return changed > 0

    async def try_claim(self, subscription_id: str, *, now: int, ttl_seconds: int) -> bool:
        """Take the provisioning claim; only one holder at a time per subscription.

        A claim older than ``ttl_seconds`` is considered abandoned and can be retaken.
        """
        changed = await self.db.execute(
            """
            UPDATE subscriptions
            SET provisioning_claimed_at = ?
            WHERE id = ?
              AND vpn_user_created = 0
              AND (provisioning_claimed_at IS NULL OR provisioning_claimed_at < ?)
            """,
            (now, subscription_id, now - ttl_seconds),
        )
        return changed == 1

    async def release_claim(self, subscription_id: str) -> None:
        await self.db.execute(
            "UPDATE subscriptions SET provisioning_claimed_at = NULL WHERE id = ? AND vpn_user_created = 0",
            (subscription_id,),
        )

    async def mark_provisioned(
        self,
        subscription_id: str,
        *,
        subscription_url: str,
        expire_at: int | None,
    ) -> bool:
        changed = await self.db.execute(
            """
            UPDATE subscriptions
            SET vpn_user_created = 1,
                subscription_url = ?,
                status = ?,
                expire_at = ?,
                provisioning_claimed_at = NULL,
                updated_at = ?
            WHERE id = ? AND vpn_user_created = 0
            """,
            (
                subscription_url,
                SubscriptionStatus.ACTIVE.value,
                expire_at,
                int(time.time()),
                subscription_id,
            ),
        )
        return changed == 1

    @staticmethod
    def _row_to_subscription(row) -> Subscription | None:
        if row is None:
            return None
        return Subscription(
            id=str(row["id"]),
            username=str(row["username"]),
            plan_id=str(row["plan_id"]) if row["plan_id"] else None,
            data_limit_gb=int(row["data_limit_gb"]),
            duration_days=int(row["duration_days"]),
            status=str(row["status"]),
            admin_decision=str(row["admin_decision"] or AdminDecision.PENDING.value),
            vpn_user_created=bool(row["vpn_user_created"]),
            subscription_url=row["subscription_url"],
            expire_at=int(row["expire_at"]) if row["expire_at"] is not None else None,
            provisioning_claimed_at=(
                int(row["provisioning_claimed_at"]) if row["provisioning_claimed_at"] is not None else None
            ),
            email=row["email"],
            mobile=str(row["mobile"] or ""),
            notes=row["notes"],
        )
