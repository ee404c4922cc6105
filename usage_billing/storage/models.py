"""
Data models for storage layer.

Defines the rows kept in the ingestion ledger.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class IngestedEventRecord:
    """Immutable record of one usage event accepted by the remote service.

    The ledger is append-only: a record is written once per event id and
    never updated.
    """
    event_id: str
    schema_name: str
    account_id: str
    event_timestamp: datetime
    ingested_at: datetime
    status: str
