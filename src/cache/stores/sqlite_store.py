# src/cache/stores/sqlite_store.py - v3
"""SQLite-based key-value store (STORE_BACKEND=sqlite).

Uses stdlib sqlite3, no external dependency. Every primitive is a single
``BEGIN IMMEDIATE`` transaction, so compare-and-swap operations stay atomic
across processes sharing the same database file on one host. Expiry uses
wall-clock time because several processes read the same rows. Set members
carry their own expiry, so an index entry outlives its last add only by the
TTL that add asked for.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import AsyncIterator, Iterable, Iterator

from indexcore.cache.stores.base_store import BaseKeyValueStore
from indexcore.core.errors import StoreError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_entries (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    expires_at REAL
);
CREATE TABLE IF NOT EXISTS kv_sets (
    key TEXT NOT NULL,
    member TEXT NOT NULL,
    expires_at REAL,
    PRIMARY KEY (key, member)
);
CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv_entries(expires_at);
CREATE INDEX IF NOT EXISTS idx_kv_sets_expires ON kv_sets(expires_at);
"""

_LIVE = "(expires_at IS NULL OR expires_at > ?)"
# Members per DELETE ... IN (...) statement
_MAX_PARAMS = 500


class SqliteStore(BaseKeyValueStore):
    """SQLite-backed store for single-host, multi-process deployments."""

    def __init__(self, db_path: Path | str, timeout_s: float = 5.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._mutex = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                str(self._db_path),
                timeout=timeout_s,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open SQLite store at {self._db_path}: {e}") from e

    async def get(self, key: str) -> bytes | None:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT value FROM kv_entries WHERE key = ? AND {_LIVE}",
                (key, time.time()),
            )
            row = cur.fetchone()
        return None if row is None else bytes(row[0])

    async def set(self, key: str, value: bytes, ttl_s: float | None = None) -> None:
        with self._transaction() as cur:
            cur.execute(
                "INSERT OR REPLACE INTO kv_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, _deadline(ttl_s)),
            )

    async def set_if_absent(self, key: str, value: bytes, ttl_s: float | None = None) -> bool:
        now = time.time()
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM kv_entries WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (key, now),
            )
            cur.execute(
                "INSERT OR IGNORE INTO kv_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, _deadline(ttl_s)),
            )
            return cur.rowcount == 1

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        with self._transaction() as cur:
            cur.execute(
                f"DELETE FROM kv_entries WHERE key = ? AND value = ? AND {_LIVE}",
                (key, expected, time.time()),
            )
            return cur.rowcount == 1

    async def compare_and_expire(self, key: str, expected: bytes, ttl_s: float) -> bool:
        with self._transaction() as cur:
            cur.execute(
                f"UPDATE kv_entries SET expires_at = ? WHERE key = ? AND value = ? AND {_LIVE}",
                (_deadline(ttl_s), key, expected, time.time()),
            )
            return cur.rowcount == 1

    async def delete(self, key: str) -> int:
        now = time.time()
        with self._transaction() as cur:
            cur.execute(f"DELETE FROM kv_entries WHERE key = ? AND {_LIVE}", (key, now))
            live_removed = cur.rowcount
            cur.execute(f"DELETE FROM kv_sets WHERE key = ? AND {_LIVE}", (key, now))
            set_removed = cur.rowcount
            cur.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
            cur.execute("DELETE FROM kv_sets WHERE key = ?", (key,))
        return 1 if live_removed or set_removed else 0

    async def scan(self, pattern: str) -> AsyncIterator[str]:
        now = time.time()
        with self._transaction() as cur:
            cur.execute(
                f"SELECT key FROM kv_entries WHERE key GLOB ? AND {_LIVE} "
                f"UNION SELECT DISTINCT key FROM kv_sets WHERE key GLOB ? AND {_LIVE}",
                (pattern, now, pattern, now),
            )
            snapshot = [row[0] for row in cur.fetchall()]
        for key in snapshot:
            yield key

    async def add_to_set(self, key: str, member: str, ttl_s: float | None = None) -> None:
        now = time.time()
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM kv_sets WHERE key = ? AND member = ? "
                "AND expires_at IS NOT NULL AND expires_at <= ?",
                (key, member, now),
            )
            # Extend only: NULL (no expiry) wins, otherwise the later deadline
            cur.execute(
                "INSERT INTO kv_sets (key, member, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT (key, member) DO UPDATE SET expires_at = CASE "
                "WHEN kv_sets.expires_at IS NULL OR excluded.expires_at IS NULL THEN NULL "
                "ELSE MAX(kv_sets.expires_at, excluded.expires_at) END",
                (key, member, _deadline(ttl_s)),
            )

    async def remove_from_set(self, key: str, members: Iterable[str]) -> int:
        wanted = sorted(set(members))
        removed = 0
        now = time.time()
        with self._transaction() as cur:
            for start in range(0, len(wanted), _MAX_PARAMS):
                chunk = wanted[start:start + _MAX_PARAMS]
                placeholders = ", ".join("?" * len(chunk))
                cur.execute(
                    f"DELETE FROM kv_sets WHERE key = ? AND member IN ({placeholders}) AND {_LIVE}",
                    (key, *chunk, now),
                )
                removed += cur.rowcount
        return removed

    async def set_members(self, key: str) -> set[str]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT member FROM kv_sets WHERE key = ? AND {_LIVE}", (key, time.time())
            )
            return {row[0] for row in cur.fetchall()}

    async def purge_expired(self) -> int:
        """Physically remove expired rows and set members. Returns the number removed."""
        now = time.time()
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
            )
            removed = cur.rowcount
            cur.execute(
                "DELETE FROM kv_sets WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
            )
            removed += cur.rowcount
        logger.debug("Purged %d expired rows from %s", removed, self._db_path)
        return removed

    async def close(self) -> None:
        with self._mutex:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run statements in one immediate transaction; map failures to StoreError."""
        with self._mutex:
            try:
                cur = self._conn.cursor()
            except sqlite3.Error as e:
                raise StoreError(f"SQLite store unavailable: {e}") from e
            try:
                cur.execute("BEGIN IMMEDIATE")
                yield cur
                cur.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StoreError(f"SQLite store failure: {e}") from e
            except BaseException:
                self._rollback()
                raise
            finally:
                cur.close()

    def _rollback(self) -> None:
        try:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning("Rollback failed on %s: %s", self._db_path, e)


def _deadline(ttl_s: float | None) -> float | None:
    return None if ttl_s is None else time.time() + ttl_s
