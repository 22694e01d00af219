"""
core/common/db_interface.py
===========================

Shared helpers for SQLite-backed modules.
"""
from __future__ import annotations

from pathlib import Path
import sqlite3

MEMORY_DB = ":memory:"


def create_sqlite_connection(
    db_path: Path | str,
    *,
    check_same_thread: bool = False,
    foreign_keys: bool = False,
    autocommit: bool = False,
    busy_timeout_ms: int = 5000,
) -> sqlite3.Connection:
    """Create a sqlite3 connection with common defaults.

    With ``autocommit=True`` the connection runs in sqlite's autocommit mode
    and callers issue BEGIN/COMMIT themselves.
    """
    target = str(db_path)
    if target != MEMORY_DB:
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        target,
        check_same_thread=check_same_thread,
        isolation_level=None if autocommit else "",
    )
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    if foreign_keys:
        conn.execute("PRAGMA foreign_keys = ON")
    if target != MEMORY_DB:
        conn.execute("PRAGMA journal_mode = WAL")
    return conn
