"""SQLite-backed store for expensebot.

Three tables:
    kv             — small JSON documents under fixed keys
                     (execution queue, auth cache, API token)
    templates      — template documents (JSON) keyed by template_id
    notifications  — delivered notification history
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger


class MemoryStore:
    """SQLite store — single source of truth between wake-ups."""

    def __init__(self, db_path: str = "data/expensebot.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"MemoryStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # KEY-VALUE
    # ════════════════════════════════════════════════════════════

    def get(self, key: str) -> Any | None:
        """Return the decoded JSON value stored under ``key``, or None."""
        with self._get_conn() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` (JSON-serializable) under ``key``. Last writer wins."""
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO kv (key, value, updated_at)
                   VALUES (?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value, updated_at = CURRENT_TIMESTAMP""",
                (key, json.dumps(value)),
            )
            conn.commit()

    def delete(self, key: str) -> bool:
        with self._get_conn() as conn:
            cur = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
        return cur.rowcount > 0

    # ════════════════════════════════════════════════════════════
    # TEMPLATES
    # ════════════════════════════════════════════════════════════

    def save_template(self, template_id: str, name: str, data: dict[str, Any]) -> None:
        """Insert or replace a template document."""
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO templates (template_id, name, data, updated_at)
                   VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(template_id) DO UPDATE SET
                       name = excluded.name, data = excluded.data,
                       updated_at = CURRENT_TIMESTAMP""",
                (template_id, name, json.dumps(data)),
            )
            conn.commit()

    def get_template(self, template_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT data FROM templates WHERE template_id = ?", (template_id,)
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def list_templates(self) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT data FROM templates ORDER BY created_at, rowid"
            ).fetchall()
        return [json.loads(r["data"]) for r in rows]

    def delete_template(self, template_id: str) -> bool:
        """Delete a template. Returns True if it existed."""
        with self._get_conn() as conn:
            cur = conn.execute(
                "DELETE FROM templates WHERE template_id = ?", (template_id,)
            )
            conn.commit()
        return cur.rowcount > 0

    # ════════════════════════════════════════════════════════════
    # NOTIFICATIONS
    # ════════════════════════════════════════════════════════════

    def add_notification(
        self,
        kind: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Record a notification. Returns its ID."""
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO notifications (kind, title, message, metadata)
                   VALUES (?, ?, ?, ?)""",
                (kind, title, message, json.dumps(metadata or {})),
            )
            conn.commit()
            return cur.lastrowid

    def get_notifications(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent notifications first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        result = []
        for r in rows:
            item = dict(r)
            item["metadata"] = json.loads(item["metadata"] or "{}")
            result.append(item)
        return result

    def prune_notifications(self, keep: int, retention_days: int) -> int:
        """Keep at most ``keep`` rows, none older than ``retention_days``."""
        with self._get_conn() as conn:
            cur = conn.execute(
                """DELETE FROM notifications
                   WHERE created_at < datetime('now', ?)
                      OR id NOT IN (
                          SELECT id FROM notifications ORDER BY id DESC LIMIT ?
                      )""",
                (f"-{retention_days} days", keep),
            )
            conn.commit()
        return cur.rowcount


# ════════════════════════════════════════════════════════════
# SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Key-value documents (execution queue, auth cache, token)
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 2. Templates
CREATE TABLE IF NOT EXISTS templates (
    template_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 3. Notification history
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT DEFAULT '{}',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_notifications_created ON notifications(created_at DESC);
"""
