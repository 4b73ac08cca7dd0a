"""
Database connection management.

Opens SQLite connections to the usage store shared by the CLI and the audit scheduler.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "usage_reconciler.db"

# Seconds a connection waits on a lock held by another writer
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection to the usage store.

    ``~`` is expanded and missing parent directories are created. Scheduled
    audits write from a worker thread, so a connection waits for a busy
    store instead of failing at once.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
