import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from constants import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)


class SettingsDatabase:
    """Durable key-value side-channel backed by the sqlite ``settings`` table.

    Values are opaque strings; callers own the serialization. Errors from
    sqlite propagate so the caller can decide how to degrade.
    """

    def __init__(self, db_path=None):
        self.db_path = db_path or DEFAULT_DB_PATH
        if self.db_path != ':memory:':
            parent = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(parent, exist_ok=True)
        self.create_tables()

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def create_tables(self):
        with self.get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
            ''')

            # Older settings files predate the updated_at column
            cursor = conn.execute("PRAGMA table_info(settings)")
            columns = [info[1] for info in cursor.fetchall()]
            if 'updated_at' not in columns:
                logger.info("Migrating settings table: adding updated_at column")
                conn.execute("ALTER TABLE settings ADD COLUMN updated_at TEXT")

    def get_item(self, key: str) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            return row[0]

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"settings values must be strings, got {type(value).__name__}")
        now_iso = _utc_now_iso()
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now_iso),
            )

    def remove_item(self, key: str) -> None:
        with self.get_connection() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    def keys(self, prefix: str = '') -> List[str]:
        with self.get_connection() as conn:
            if prefix:
                # LIKE would treat '_' in prefixes such as "ui_" as a wildcard
                rows = conn.execute(
                    "SELECT key FROM settings WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                ).fetchall()
            else:
                rows = conn.execute("SELECT key FROM settings ORDER BY key").fetchall()
            return [row[0] for row in rows]

    def get_updated_at(self, key: str) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT updated_at FROM settings WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    def get_count(self):
        with self.get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM settings").fetchone()[0]


class MemoryStorage:
    """In-process side-channel with the same contract as SettingsDatabase."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"settings values must be strings, got {type(value).__name__}")
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self, prefix: str = '') -> List[str]:
        return sorted(k for k in self._items if k.startswith(prefix))

    def __contains__(self, key) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._items)


def _utc_now_iso() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
