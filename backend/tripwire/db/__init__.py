"""Tripwire persistence layer: SQLite and repositories."""

from tripwire.db.models import (
    Identifier,
    IngestionProgress,
    IngestionRun,
    WatchlistRecord,
    WatchlistRecordIn,
)
from tripwire.db.repositories import (
    IdentifierRepo,
    IngestionRunRepo,
    RecordRepo,
    RunNotFoundError,
    SearchQueryRepo,
)
from tripwire.db.sqlite import SQLiteDB

__all__ = [
    "SQLiteDB",
    "Identifier",
    "WatchlistRecordIn",
    "WatchlistRecord",
    "IngestionRun",
    "IngestionProgress",
    "RecordRepo",
    "IdentifierRepo",
    "IngestionRunRepo",
    "SearchQueryRepo",
    "RunNotFoundError",
]
