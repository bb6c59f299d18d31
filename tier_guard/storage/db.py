"""
Database connection management.

Provides SQLite connections for the ledger and history tables.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "tier_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection in WAL mode.

    Connections are short lived: every repository call opens its own, so
    they can be used from any request thread.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with write-ahead logging enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
