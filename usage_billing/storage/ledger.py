"""
Append-only ledger of ingested usage events.

Lets the workflow recognise an event id it has already submitted so the
same id is resent instead of a fresh one being minted.
"""

from datetime import datetime, timezone
from typing import List, Optional

from ..core.models import IngestResult, UsageEvent
from .db import DEFAULT_LEDGER_PATH, ledger_connection
from .models import IngestedEventRecord


class IngestionLedger:
    """Repository over the ``ingested_event`` table."""

    def __init__(self, db_path: str = DEFAULT_LEDGER_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def has_event(self, schema_name: str, event_id: str) -> bool:
        with ledger_connection(self.db_path) as conn:
            cursor = conn.execute(
                "SELECT 1 FROM ingested_event WHERE schema_name = ? AND event_id = ?",
                (schema_name, event_id),
            )
            return cursor.fetchone() is not None

    def record(self, event: UsageEvent, result: IngestResult) -> bool:
        """Record an accepted event.

        Returns:
            False if the event id was already present for its schema
        """
        with ledger_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO ingested_event
                (event_id, schema_name, account_id, event_timestamp, ingested_at, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.schema_name,
                    event.account_id,
                    event.timestamp.isoformat(),
                    datetime.now(timezone.utc).isoformat(),
                    result.status,
                ),
            )
            return cursor.rowcount == 1

    def recent(
        self,
        schema_name: Optional[str] = None,
        account_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[IngestedEventRecord]:
        """Fetch ledger rows, newest ingestion first."""
        query = """
            SELECT event_id, schema_name, account_id, event_timestamp, ingested_at, status
            FROM ingested_event
        """
        params: list = []
        conditions = []
        if schema_name:
            conditions.append("schema_name = ?")
            params.append(schema_name)
        if account_id:
            conditions.append("account_id = ?")
            params.append(account_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY ingested_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with ledger_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            IngestedEventRecord(
                event_id=row[0],
                schema_name=row[1],
                account_id=row[2],
                event_timestamp=datetime.fromisoformat(row[3]),
                ingested_at=datetime.fromisoformat(row[4]),
                status=row[5],
            )
            for row in rows
        ]


def initialize_schema(db_path: str = DEFAULT_LEDGER_PATH) -> None:
    """Create the ingested_event table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    with ledger_connection(db_path) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ingested_event (
                event_id TEXT NOT NULL,
                schema_name TEXT NOT NULL,
                account_id TEXT NOT NULL,
                event_timestamp TEXT NOT NULL,
                ingested_at TEXT NOT NULL,
                status TEXT NOT NULL,
                PRIMARY KEY (schema_name, event_id)
            )
        """)
