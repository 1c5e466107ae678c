"""Storage module for PawnSys.

A small key-value store over SQLite. Each logical collection (customers,
pledges, day-end records, audit logs, settings) is one JSON value under its
own key, matching the ``get(key, default)`` / ``set(key, value)`` contract
the services rely on.
"""
import json
import logging
import sqlite3
from datetime import datetime
from contextlib import contextmanager

from pawnsys.config import DEFAULT_DB_NAME, STORAGE_KEYS
from pawnsys.exceptions import StorageError

logger = logging.getLogger(__name__)


class StorageManager:
    """Handles all SQLite key-value operations."""

    def __init__(self, db_name=DEFAULT_DB_NAME):
        self.db_name = db_name
        self._closed = False
        self.conn = sqlite3.connect(db_name)
        self._in_transaction = False
        self.create_tables()

    def close(self):
        """Close the database connection."""
        if getattr(self, "conn", None) is not None and not self._closed:
            self.conn.close()
            self._closed = True

    def __del__(self):
        self.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @contextmanager
    def transaction(self):
        """Group several writes; rolled back together on failure.

        Usage:
            with storage.transaction():
                storage.set("pledges", pledges)
                storage.set("customers", customers)
        """
        outer = not self._in_transaction
        self._in_transaction = True
        try:
            yield
            if outer:
                self.conn.commit()
        except sqlite3.Error as e:
            if outer:
                self.conn.rollback()
            raise StorageError(f"Transaction failed: {str(e)}")
        except Exception:
            if outer:
                self.conn.rollback()
            raise
        finally:
            if outer:
                self._in_transaction = False

    def create_tables(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT
            )
        """)
        self.conn.commit()

    def _commit(self):
        if not self._in_transaction:
            self.conn.commit()

    def get(self, key, default=None):
        """Get the decoded value stored under ``key``."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM kv_store WHERE key=?", (key,))
        res = cursor.fetchone()
        if not res:
            return default
        try:
            return json.loads(res[0])
        except json.JSONDecodeError:
            logger.warning(f"Discarding undecodable value stored under '{key}'")
            return default

    def set(self, key, value):
        """Store ``value`` (JSON-serializable) under ``key``."""
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for '{key}' is not serializable: {e}", {'key': key})
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
            (key, payload, datetime.now().isoformat())
        )
        self._commit()

    def delete(self, key):
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM kv_store WHERE key=?", (key,))
        self._commit()

    def keys(self):
        cursor = self.conn.cursor()
        cursor.execute("SELECT key FROM kv_store ORDER BY key")
        return [row[0] for row in cursor.fetchall()]

    def get_setting(self, name, default=None):
        """Get one entry of the settings collection."""
        settings = self.get(STORAGE_KEYS['settings'], {})
        return settings.get(name, default)

    def set_setting(self, name, value):
        """Set one entry of the settings collection."""
        settings = self.get(STORAGE_KEYS['settings'], {})
        settings[name] = value
        self.set(STORAGE_KEYS['settings'], settings)
