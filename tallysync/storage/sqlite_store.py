import os
import sqlite3
import threading
from datetime import datetime, timezone

import structlog

log = structlog.get_logger()


def _now():
    return datetime.now(timezone.utc).isoformat()


class SQLiteSlot:
    """Durable key/value slot on SQLite holding the device's collection bytes.

    Also keeps a small log of sync messages seen by the device.
    """

    def __init__(self, db_path="/data/device.db", key="saved_categories"):
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.key = key
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS slots (
                key TEXT PRIMARY KEY,
                updated_at TEXT NOT NULL,
                payload BLOB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS sync_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                message_type TEXT NOT NULL,
                sender TEXT NOT NULL,
                mode TEXT,
                changed INTEGER NOT NULL
            );
        """)

    def load(self):
        with self._lock:
            row = self.conn.execute(
                "SELECT payload FROM slots WHERE key = ?", (self.key,)
            ).fetchone()
        if not row:
            return None
        return bytes(row["payload"])

    def save(self, payload):
        try:
            with self._lock:
                self.conn.execute(
                    "INSERT INTO slots (key, updated_at, payload) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET updated_at = excluded.updated_at, "
                    "payload = excluded.payload",
                    (self.key, _now(), sqlite3.Binary(payload)),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            log.warning("slot_write_failed", key=self.key, error=str(e))
            return False
        return True

    def log_sync(self, message_type, sender, mode=None, changed=False):
        try:
            with self._lock:
                self.conn.execute(
                    "INSERT INTO sync_log (timestamp, message_type, sender, mode, changed) VALUES (?, ?, ?, ?, ?)",
                    (_now(), message_type, sender, mode, int(changed)),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            log.warning("sync_log_write_failed", error=str(e))

    def get_sync_log(self, limit=50):
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            {
                "timestamp": r["timestamp"],
                "message_type": r["message_type"],
                "sender": r["sender"],
                "mode": r["mode"],
                "changed": bool(r["changed"]),
            }
            for r in rows
        ]

    def close(self):
        self.conn.close()


class MemorySlot:
    """In-process slot with the same contract, for tests and ephemeral devices."""

    def __init__(self, payload=None, fail_writes=False):
        self.payload = payload
        self.fail_writes = fail_writes
        self.writes = 0
        self.sync_log = []

    def load(self):
        return self.payload

    def save(self, payload):
        if self.fail_writes:
            return False
        self.payload = bytes(payload)
        self.writes += 1
        return True

    def log_sync(self, message_type, sender, mode=None, changed=False):
        self.sync_log.insert(
            0,
            {
                "timestamp": _now(),
                "message_type": message_type,
                "sender": sender,
                "mode": mode,
                "changed": bool(changed),
            },
        )

    def get_sync_log(self, limit=50):
        return self.sync_log[:limit]
