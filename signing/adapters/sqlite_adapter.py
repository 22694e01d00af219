"""SQLite implementation of DatabaseAdapter.

One shared connection, guarded by a re-entrant lock so that request threads,
composition workers and the sweeper can share it. A transaction holds the
lock from BEGIN to COMMIT, which keeps units of work from interleaving.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Iterator, List, Dict, Optional
from pathlib import Path
import logging
import sqlite3
import threading

from signing.adapters.database_adapter import DatabaseAdapter
from core.common.db_interface import create_sqlite_connection

logger = logging.getLogger(__name__)


class SQLiteAdapter(DatabaseAdapter):
    """SQLite implementation of DatabaseAdapter."""

    def __init__(self, db_path: str | Path):
        """
        Args:
            db_path: Path to SQLite database file, or ``":memory:"``
        """
        self._db_path = str(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create connection."""
        if self._conn is None:
            self._conn = create_sqlite_connection(
                self._db_path,
                check_same_thread=False,
                foreign_keys=True,
                autocommit=True,
            )
        return self._conn

    def execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(query, params).fetchone()
            return dict(row) if row else None

    def fetchall(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
            return [dict(row) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK")
                    logger.debug("Transaction rolled back on %s", self._db_path)
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.conn.execute("COMMIT")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                try:
                    self._conn.close()
                finally:
                    self._conn = None

    def executescript(self, script: str) -> None:
        """Execute multiple SQL statements."""
        with self._lock:
            self.conn.executescript(script)
