"""Database connection management and initialization."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from sqlite3 import Connection

from beartype import beartype

from delphi_pulse.database.models import CHECKPOINT_SEED, TABLE_SCHEMAS, TRADES_INDEXES
from delphi_pulse.utils.config import DB_PATH

# Seconds a writer waits for another process's write lock
BUSY_TIMEOUT = 30.0


@beartype
def get_connection(db_path: Path | str = DB_PATH) -> Connection:
    """
    Create and return a database connection.

    The connection runs in autocommit mode; writes are grouped explicitly
    with :func:`transaction`.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: Connection) -> Iterator[Connection]:
    """
    Run the enclosed statements in one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so two
    processes cannot both read a row and then both update it.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


@beartype
def initialize_database(conn: Connection | None = None, db_path: Path | str = DB_PATH) -> None:
    """Create tables, indexes and the checkpoint singleton row if missing."""
    should_close = conn is None
    if conn is None:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = get_connection(db_path)

    try:
        with transaction(conn):
            for schema_sql in TABLE_SCHEMAS:
                conn.execute(schema_sql)
            for index_sql in TRADES_INDEXES:
                conn.execute(index_sql)
            conn.execute(CHECKPOINT_SEED)
    finally:
        if should_close:
            conn.close()

