"""
Database connection management.

Provides SQLite connections for the cost ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "narrative_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    return conn
