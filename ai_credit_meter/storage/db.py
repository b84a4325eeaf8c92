"""
Database connection management.

Provides SQLite connections for the credit ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_credit_meter.db"

# Seconds a writer waits for another writer's transaction before giving up
BUSY_TIMEOUT_SECONDS = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = BUSY_TIMEOUT_SECONDS) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.
    
    The connection is in autocommit mode; callers open transactions
    explicitly with BEGIN IMMEDIATE so the write lock is taken before the
    balance is read.
    
    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database
        
    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
