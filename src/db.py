"""Shared SQLite helpers — WAL mode, row_factory defaults, immediate transactions."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

BUSY_TIMEOUT_MS = 5000


def wal_connect(db_path: str | Path, row_factory: bool = False) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_MS / 1000, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: str | Path, immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """Run a block inside one SQLite transaction and close the connection after.

    BEGIN IMMEDIATE takes the write lock up front so read-modify-write
    sequences on a single key are atomic across threads and processes.
    """
    conn = wal_connect(db_path, row_factory=True)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def read_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Short-lived read connection with sqlite3.Row rows."""
    conn = wal_connect(db_path, row_factory=True)
    try:
        yield conn
    finally:
        conn.close()
