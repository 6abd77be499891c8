"""Session credential persistence backed by a key-value store."""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from .models import StoreError

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_KEY = "session-credentials"


class KeyValueStore(Protocol):
    """Minimal key-value capability the credential adapter needs."""

    def set(self, key: str, value: str) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def delete(self, key: str) -> None: ...

    def close(self) -> None: ...


class SqliteKeyValueStore:
    """
    Key-value store on a single SQLite table.

    Key features:
    - Persistent connection opened once by connect()
    - WAL journal so readers don't block the writer
    - Every sqlite3 error surfaces as StoreError
    """

    def __init__(self, db_path: str = "~/.local/share/session-keeper/credentials.db"):
        """
        Args:
            db_path: Path to the SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path if db_path == ":memory:" else str(Path(db_path).expanduser())
        self._db_conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.Lock()

    def connect(self):
        """Open the connection and create the schema. Raises StoreError on failure."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db_conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._db_conn.execute("PRAGMA journal_mode=WAL")
            self._db_conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            self._db_conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Cannot open credential store at {self.db_path}: {e}") from e
        logger.info(f"Credential store connected ({self.db_path})")

    def _conn(self) -> sqlite3.Connection:
        if self._db_conn is None:
            raise StoreError("Credential store is not connected")
        return self._db_conn

    def set(self, key: str, value: str) -> None:
        with self._db_lock:
            try:
                conn = self._conn()
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"set {key!r} failed: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self._db_lock:
            try:
                row = self._conn().execute(
                    "SELECT value FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"get {key!r} failed: {e}") from e
        return row[0] if row else None

    def delete(self, key: str) -> None:
        with self._db_lock:
            try:
                conn = self._conn()
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"delete {key!r} failed: {e}") from e

    def close(self) -> None:
        with self._db_lock:
            if self._db_conn is None:
                return
            try:
                self._db_conn.close()
            except sqlite3.Error as e:
                raise StoreError(f"close failed: {e}") from e
            finally:
                self._db_conn = None
        logger.info("Credential store closed")


class CredentialStoreAdapter:
    """Saves, loads and clears the driver's credential blob under one key."""

    def __init__(self, store: KeyValueStore, key: str = DEFAULT_CREDENTIALS_KEY):
        self.store = store
        self.key = key

    def save(self, blob: Any) -> None:
        """Persist the blob. StoreError propagates to the caller."""
        try:
            self.store.set(self.key, json.dumps(blob))
        except StoreError as e:
            logger.error(f"Error saving session credentials: {e}")
            raise

    def load(self) -> Optional[Any]:
        """
        Load the stored blob.

        Returns:
            The blob, or None when absent, unreadable or the store failed
            (the driver then starts a fresh pairing)
        """
        try:
            raw = self.store.get(self.key)
        except StoreError as e:
            logger.error(f"Error loading session credentials, pairing required: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Stored session credentials are corrupt, pairing required: {e}")
            return None

    def clear(self) -> None:
        """Delete the stored blob. StoreError propagates to the caller."""
        try:
            self.store.delete(self.key)
        except StoreError as e:
            logger.error(f"Error clearing session credentials: {e}")
            raise
        logger.info("Session credentials cleared")

    def close(self) -> None:
        self.store.close()
