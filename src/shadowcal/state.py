"""SQLite key-value state store with per-key TTL.

The rest of the system only relies on the get / set(ttl) / delete / exists contract,
so any key-value backend with expiry could replace this one.

Keys are namespaced by purpose:
- subscription:<calendar_id>              -> SubscriptionChannel record (dict)
- mapping:<calendar_id>:<source_event_id> -> {"target_event_id", "content_hash", "synced_at"}
- last_sync:<calendar_id>                 -> ISO 8601 UTC timestamp

Design notes
- Values are stored as JSON text.
- Expired rows behave as absent and are deleted lazily on read; purge_expired()
  deletes them in bulk.
- All access goes through one connection guarded by a lock, since debounce timers
  run reconciliations on worker threads.

Example
  from shadowcal.state import State, mapping_key
  with State("/data/shadowcal.sqlite") as st:
      st.set(mapping_key("primary", "e1"), {"target_event_id": "t1"}, ttl=90 * 86400)
      print(st.get(mapping_key("primary", "e1")))
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import stat
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

__all__ = [
    "State",
    "last_sync_key",
    "mapping_key",
    "subscription_key",
]

log = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).strftime(ISO_FORMAT)


def subscription_key(calendar_id: str) -> str:
    return f"subscription:{calendar_id}"


def mapping_key(calendar_id: str, source_event_id: str) -> str:
    return f"mapping:{calendar_id}:{source_event_id}"


def last_sync_key(calendar_id: str) -> str:
    return f"last_sync:{calendar_id}"


class State:
    """SQLite-backed key-value store.

    `clock` returns epoch seconds and exists so tests can drive TTL expiry.
    """

    def __init__(self, db_path: str, *, clock: Callable[[], float] | None = None) -> None:
        self.db_path = db_path
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def __enter__(self) -> State:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: object | None,
    ) -> None:
        self.close()

    # -------------
    # Connection
    # -------------

    def _connect(self, db_path: str) -> sqlite3.Connection:
        path = Path(db_path)
        if db_path != ":memory:" and path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(path), timeout=30.0, check_same_thread=False)

        if db_path != ":memory:":
            # Owner read/write only; the store holds channel tokens and event ids
            try:
                if path.exists() and not os.access(path, os.W_OK):
                    log.warning("state-db-not-writable %s", path)
                else:
                    path.chmod(stat.S_IRUSR | stat.S_IWUSR)
            except OSError as e:
                log.warning("state-db-chmod-failed %s: %s", path, e)
            conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("State store is closed")
        return self._conn

    # -------------
    # Schema
    # -------------

    def _init_schema(self) -> None:
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,        -- JSON
                  expires_at REAL,            -- epoch seconds, NULL = no expiry
                  updated_at TEXT NOT NULL
                );
                """
            )
            self.conn.commit()

    # -------------
    # Key-value contract
    # -------------

    def get(self, key: str) -> Any | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT value, expires_at FROM kv WHERE key = ?;", (key,)
            ).fetchone()
            if not row:
                return None
            if row["expires_at"] is not None and row["expires_at"] <= self._clock():
                self.conn.execute("DELETE FROM kv WHERE key = ?;", (key,))
                self.conn.commit()
                return None
            return json.loads(row["value"])

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Upsert `value` under `key`; `ttl` in seconds (None or <= 0 means no expiry)."""
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO kv(key, value, expires_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at;
                """,
                (key, json.dumps(value, sort_keys=True), expires_at, _utc_now_iso()),
            )
            self.conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM kv WHERE key = ?;", (key,))
            self.conn.commit()

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    # -------------
    # Maintenance / diagnostics
    # -------------

    def keys(self, prefix: str = "") -> list[str]:
        """Live keys starting with `prefix` (sorted)."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT key FROM kv
                WHERE key >= ? AND key < ? AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY key;
                """,
                (prefix, prefix + "\uffff", self._clock()),
            ).fetchall()
        return [r["key"] for r in rows]

    def purge_expired(self) -> int:
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?;",
                (self._clock(),),
            )
            self.conn.commit()
            return cur.rowcount
