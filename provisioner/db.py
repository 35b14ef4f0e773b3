from __future__ import annotations

import asyncio
import os

import aiosqlite


SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS panels (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL UNIQUE,
  type TEXT NOT NULL,
  base_url TEXT NOT NULL,
  username TEXT NOT NULL,
  password_enc TEXT NOT NULL,
  country TEXT NOT NULL DEFAULT '',
  active INTEGER NOT NULL DEFAULT 1,
  health_status TEXT NOT NULL DEFAULT 'unknown',
  last_health_check INTEGER,
  default_inbounds TEXT NOT NULL DEFAULT '[]',
  enabled_protocols TEXT NOT NULL DEFAULT '[]',
  created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS plans (
  id TEXT PRIMARY KEY,
  plan_identifier TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  api_type TEXT NOT NULL,
  assigned_panel_id TEXT,
  price_per_gb INTEGER NOT NULL DEFAULT 0,
  default_data_limit_gb INTEGER NOT NULL DEFAULT 10,
  default_duration_days INTEGER NOT NULL DEFAULT 30,
  active INTEGER NOT NULL DEFAULT 1,
  created_at INTEGER NOT NULL,
  FOREIGN KEY(assigned_panel_id) REFERENCES panels(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS subscriptions (
  id TEXT PRIMARY KEY,
  username TEXT NOT NULL,
  plan_id TEXT,
  data_limit_gb INTEGER NOT NULL,
  duration_days INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  admin_decision TEXT NOT NULL DEFAULT 'pending',
  admin_decided_at INTEGER,
  vpn_user_created INTEGER NOT NULL DEFAULT 0,
  subscription_url TEXT,
  expire_at INTEGER,
  provisioning_claimed_at INTEGER,
  email TEXT,
  mobile TEXT NOT NULL DEFAULT '',
  notes TEXT,
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL,
  FOREIGN KEY(plan_id) REFERENCES plans(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS test_users (
  id TEXT PRIMARY KEY,
  username TEXT NOT NULL,
  email TEXT NOT NULL,
  phone_number TEXT NOT NULL,
  device_fingerprint TEXT,
  panel_id TEXT,
  panel_name TEXT NOT NULL,
  subscription_url TEXT,
  data_limit_bytes INTEGER NOT NULL DEFAULT 0,
  expire_at INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'active',
  created_at INTEGER NOT NULL,
  UNIQUE(username, email, phone_number),
  FOREIGN KEY(panel_id) REFERENCES panels(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS user_creation_logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  subscription_id TEXT,
  panel_id TEXT,
  panel_name TEXT,
  panel_url TEXT,
  adapter TEXT NOT NULL,
  request_data TEXT NOT NULL,
  response_data TEXT,
  success INTEGER NOT NULL,
  error_code TEXT,
  error_message TEXT,
  created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_plans_assigned_panel
  ON plans(assigned_panel_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_decision
  ON subscriptions(admin_decision, vpn_user_created);
CREATE INDEX IF NOT EXISTS idx_test_users_email ON test_users(email);
CREATE INDEX IF NOT EXISTS idx_test_users_phone ON test_users(phone_number);
CREATE INDEX IF NOT EXISTS idx_creation_logs_subscription
  ON user_creation_logs(subscription_id, created_at);
"""


class Database:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_lock = asyncio.Lock()

    async def init(self) -> None:
        async with self._init_lock:
            parent = os.path.dirname(self.db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as conn:
                await conn.executescript(SCHEMA_SQL)
                await conn.commit()

    async def execute(self, sql: str, params: tuple = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        async with aiosqlite.connect(self.db_path) as conn:
            await conn.execute("PRAGMA foreign_keys = ON")
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.rowcount

    async def fetchone(self, sql: str, params: tuple = ()):
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple = ()):
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            cursor = await conn.execute(sql, params)
            return await cursor.fetchall()
