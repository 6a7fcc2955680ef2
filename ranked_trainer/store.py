from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class KeyValueStore(Protocol):
    """Durable string key-value store used for the ledger and session state."""

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStore:
    """Process-local store; the default when no durable store is injected."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


def open_db(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        _migrate(conn)
    except sqlite3.Error:
        conn.close()
        raise
    return conn


def _utc_now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time()))


def _migrate(conn: sqlite3.Connection) -> None:
    row = conn.execute("PRAGMA user_version;").fetchone()
    ver = int(row[0]) if row else 0
    if ver >= SCHEMA_VERSION:
        return

    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            );
            """
        )
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")


class SqliteStore:
    """Key-value store in a single sqlite table.

    A connection is opened per call so the file can be swapped or cleared
    externally between calls.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def get(self, key: str) -> str | None:
        """Stored value, or None when absent or the database file is unreadable."""

        try:
            conn = open_db(self._path)
            try:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            logger.warning("unreadable store %s while reading %r: %s", self._path, key, exc)
            return None
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        conn = open_db(self._path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO kv(key, value, updated_at_utc) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at_utc = excluded.updated_at_utc
                    """,
                    (key, str(value), _utc_now_iso()),
                )
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = open_db(self._path)
        try:
            with conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        finally:
            conn.close()


def load_json(store: KeyValueStore, key: str, default: Any) -> Any:
    """Decode a JSON payload, falling back to ``default`` if absent or corrupt."""

    raw = store.get(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("discarding corrupt payload under %r", key)
        return default


def save_json(store: KeyValueStore, key: str, payload: Any) -> None:
    store.set(key, json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
