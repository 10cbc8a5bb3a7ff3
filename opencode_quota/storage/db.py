"""
Database connection management.

Provides read-only SQLite connections to the OpenCode store.
"""

import sqlite3
from pathlib import Path
from typing import Union

BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a read-only SQLite connection to an existing database file.

    The store is opened in read-only URI mode with query_only enabled, and
    waits out transient locks held by a writer in WAL mode.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Read-only SQLite connection returning sqlite3.Row rows
    """
    uri = Path(db_path).resolve().as_uri() + "?mode=ro"
    conn = sqlite3.connect(uri, uri=True, timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA query_only = ON")
    return conn
