# Flat key-value store on SQLite. One table, JSON values, prefix scans only.

import json
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

CLASS_PREFIX = "class:"
BOOKING_PREFIX = "booking:"
USER_PREFIX = "user:"
SESSION_PREFIX = "session:"
SETTLEMENT_PREFIX = "settlement:"
REQUEST_PREFIX = "request:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class KVStore:
    """Key -> JSON value map. Every call opens its own connection; there are no
    multi-key transactions, so callers must not rely on atomicity across keys."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def get_conn(self):
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        conn = self.get_conn()
        with closing(conn):
            cur = conn.cursor()
            cur.executescript(SCHEMA)
            conn.commit()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        conn = self.get_conn()
        with closing(conn):
            cur = conn.cursor()
            cur.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cur.fetchone()
            return json.loads(row["value"]) if row else None

    def mget(self, keys: Iterable[str]) -> List[Dict[str, Any]]:
        keys = list(keys)
        if not keys:
            return []
        conn = self.get_conn()
        with closing(conn):
            cur = conn.cursor()
            placeholders = ", ".join("?" for _ in keys)
            cur.execute(f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})", keys)
            found = {r["key"]: json.loads(r["value"]) for r in cur.fetchall()}
            return [found[k] for k in keys if k in found]

    def set(self, key: str, value: Dict[str, Any]) -> None:
        conn = self.get_conn()
        with closing(conn):
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO kv_store (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, json.dumps(value)),
            )
            conn.commit()

    def claim(self, key: str, value: Dict[str, Any]) -> bool:
        """Insert only if `key` is absent. True when this call created it."""
        conn = self.get_conn()
        with closing(conn):
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO kv_store (key, value) VALUES (?, ?) ON CONFLICT(key) DO NOTHING",
                (key, json.dumps(value)),
            )
            conn.commit()
            return cur.rowcount == 1

    def delete(self, key: str) -> None:
        conn = self.get_conn()
        with closing(conn):
            cur = conn.cursor()
            cur.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def get_by_prefix(self, prefix: str) -> List[Dict[str, Any]]:
        """Full scan of every key starting with `prefix`, ordered by key."""
        conn = self.get_conn()
        with closing(conn):
            cur = conn.cursor()
            cur.execute(
                "SELECT value FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            return [json.loads(r["value"]) for r in cur.fetchall()]
