"""
Database connection management.

Provides SQLite connections and write transactions for the ledger and
verification stores.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = "tip_ledger.db", timeout: float = DEFAULT_BUSY_TIMEOUT) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection is in autocommit mode; callers that write use
    ``write_transaction`` to take the database write lock explicitly.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(db_path: str, timeout: float = DEFAULT_BUSY_TIMEOUT) -> Iterator[sqlite3.Connection]:
    """Run a block under SQLite's single-writer lock.

    BEGIN IMMEDIATE acquires the reserved lock up front, so reads made
    inside the block cannot be invalidated by another writer before the
    block commits. Any exception rolls the whole block back.
    """
    conn = get_connection(db_path, timeout)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    finally:
        conn.close()
