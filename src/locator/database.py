"""Durable key/value storage."""

import sqlite3
import logging
import threading
from pathlib import Path
from typing import Optional, Dict
from contextlib import contextmanager

from .config import DB_PATH

logger = logging.getLogger(__name__)


class Database:
    """
    SQLite-backed key/value store used for cache persistence.

    One row per key in the kv_store table. Values are opaque strings
    (the position cache writes a JSON document, possibly compressed).

    Attributes:
        db_path: Path to the SQLite database file

    Note:
        Every call opens its own connection, so a single instance can be
        shared between the request path and the scheduler threads.
    """

    def __init__(self, db_path: Path = DB_PATH):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            # WAL mode provides better concurrency and crash recovery
            conn.execute("PRAGMA journal_mode=WAL")
            # Full sync for data integrity (slower but safer for power loss)
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute("PRAGMA wal_autocheckpoint=1000")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()
            logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """
        Get database connection with proper error handling and power loss tolerance.

        Configures SQLite with:
        - WAL mode for better concurrency and crash recovery
        - FULL synchronous mode for data integrity during power loss
        - Proper timeout for busy database handling
        """
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
        except sqlite3.Error:
            pass  # May fail if database is locked

        try:
            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def read(self, key: str) -> Optional[str]:
        """Get the stored value for key, or None."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT value FROM kv_store
                WHERE key = ?
            """, (key,))
            row = cursor.fetchone()
            return row["value"] if row else None

    def write(self, key: str, value: str):
        """Insert or replace the value stored under key."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
            """, (key, value))
            conn.commit()

    def remove(self, key: str):
        """Delete key if present."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def keys(self):
        """List all stored keys."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key FROM kv_store ORDER BY key")
            return [row["key"] for row in cursor.fetchall()]


class MemoryStorage:
    """In-process key/value store with the same interface as Database."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, value: str):
        with self._lock:
            self._data[key] = value

    def remove(self, key: str):
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return sorted(self._data)
