"""
Database connection management.

Opens short-lived SQLite connections for the local ingestion ledger.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_LEDGER_PATH = ".usage-billing.db"


def get_connection(db_path: str = DEFAULT_LEDGER_PATH) -> sqlite3.Connection:
    """Open the ledger database, creating its directory on first use.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path))


@contextmanager
def ledger_connection(db_path: str = DEFAULT_LEDGER_PATH) -> Iterator[sqlite3.Connection]:
    """Yield a connection that commits on success and is always closed."""
    conn = get_connection(db_path)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()
