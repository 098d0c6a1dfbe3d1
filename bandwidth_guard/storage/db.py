"""
Database connection management.

Provides SQLite connection for entity, traffic and audit persistence.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str = "data/bandwidth.db") -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The parent directory is created on first use. WAL journaling lets the
    sampling, flush and scheduler tasks read while another one writes.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=10.0)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn
