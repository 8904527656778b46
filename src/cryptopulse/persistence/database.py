"""SQLite connection management for CryptoPulse."""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from cryptopulse.config import load_settings

_DEFAULT_TIMEOUT = 60.0
_HEALTH_INTERVAL = 30.0


class DatabaseError(RuntimeError):
    pass


class Database:
    """Thread-safe SQLite connection manager with health checks.

    The connection is opened lazily on first use.  All statements go through a
    re-entrant lock so the manager can be driven from worker threads.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._last_health_check = 0.0

    @property
    def path(self) -> Path:
        return self._db_path

    def _open_connection(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=_DEFAULT_TIMEOUT,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA cache_size=10000;")
        conn.execute(f"PRAGMA busy_timeout={int(_DEFAULT_TIMEOUT * 1000)};")
        self._connection = conn
        self._last_health_check = time.time()

    def _ensure_connection(self) -> sqlite3.Connection:
        with self._connection_lock:
            if self._connection is None:
                self._open_connection()
            elif time.time() - self._last_health_check > _HEALTH_INTERVAL:
                try:
                    self._connection.execute("SELECT 1;")
                    self._last_health_check = time.time()
                except sqlite3.Error:
                    self._open_connection()
            return self._connection

    def connection(self) -> sqlite3.Connection:
        """Expose raw connection for migration tooling."""
        return self._ensure_connection()

    @contextmanager
    def transaction(self):
        """Run the enclosed statements in one ``BEGIN``/``COMMIT`` block."""
        with self._connection_lock:
            conn = self._ensure_connection()
            try:
                conn.execute("BEGIN;")
                yield conn
                conn.execute("COMMIT;")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                raise DatabaseError(str(exc)) from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                raise

    @contextmanager
    def cursor(self):
        with self._connection_lock:
            conn = self._ensure_connection()
            cur = conn.cursor()
            try:
                yield cur
            except sqlite3.Error as exc:
                raise DatabaseError(str(exc)) from exc
            finally:
                cur.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._connection_lock:
            conn = self._ensure_connection()
            try:
                return conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise DatabaseError(str(exc)) from exc

    def executemany(self, sql: str, params_seq: Iterable[Sequence[Any]]) -> int:
        """Insert/update many rows atomically; returns the affected row count."""
        with self.transaction() as conn:
            cur = conn.executemany(sql, params_seq)
            return cur.rowcount

    def executescript(self, script: str) -> None:
        with self._connection_lock:
            conn = self._ensure_connection()
            try:
                conn.executescript(script)
            except sqlite3.Error as exc:
                raise DatabaseError(str(exc)) from exc

    def fetch_all(self, sql: str, params: Sequence[Any] = ()):
        with self.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def fetch_one(self, sql: str, params: Sequence[Any] = ()):
        with self.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def close(self) -> None:
        with self._connection_lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


_instances: Dict[str, Database] = {}
_instances_lock = threading.RLock()


def get_database(db_path: Optional[Path] = None) -> Database:
    """Return the process-wide :class:`Database` for ``db_path``.

    Without a path the configured ``paths.db_path`` is used.  Instances are
    created lazily and shared by every caller asking for the same file.
    """

    resolved = Path(db_path or load_settings().get("paths", "db_path", default="data/cryptopulse.db"))
    key = str(resolved.resolve())
    with _instances_lock:
        db = _instances.get(key)
        if db is None:
            db = Database(resolved)
            _instances[key] = db
        return db


def close_databases() -> None:
    with _instances_lock:
        for db in _instances.values():
            db.close()
        _instances.clear()


__all__ = ["Database", "DatabaseError", "get_database", "close_databases"]
