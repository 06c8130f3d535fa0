"""Data access repositories over SQLite.

Each repo takes a SQLiteDB instance via dependency injection.
Repositories are the single entry point for all persistence: no direct
SQL from services or API routes.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from tripwire.db.models import Identifier, WatchlistRecord, WatchlistRecordIn
from tripwire.db.sqlite import SQLiteDB
from tripwire.matching.scoring import normalize_identifier, normalize_identifier_type


def _now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class RunNotFoundError(LookupError):
    """Raised when an ingestion run id does not exist."""


class RecordRepo:
    """Repository for watchlist records (the Record Store).

    Bulk inserts are split so that no statement binds more than
    ``max_params`` parameters.
    """

    COLUMNS = (
        "dataset", "id", "party_type", "primary_name", "aliases", "birth_date",
        "birth_place", "addresses", "identifiers", "remarks", "source_list",
        "extra", "created_at", "updated_at",
    )

    def __init__(self, db: SQLiteDB, max_params: int = 100) -> None:
        self._db = db
        self._max_params = max_params

    @property
    def sub_batch_size(self) -> int:
        """Records per bulk statement under the parameter ceiling."""
        return max(1, self._max_params // len(self.COLUMNS))

    def _row_params(self, dataset: str, record: WatchlistRecordIn, now: str) -> tuple[Any, ...]:
        return (
            dataset,
            record.id,
            record.party_type,
            record.primary_name,
            json.dumps(record.aliases),
            record.birth_date,
            record.birth_place,
            json.dumps(record.addresses),
            json.dumps([i.model_dump() for i in record.identifiers]),
            record.remarks,
            record.source_list,
            json.dumps(record.extra),
            now,
            now,
        )

    def bulk_insert(self, dataset: str, records: Sequence[WatchlistRecordIn]) -> int:
        """Insert or replace a sub-batch with a single multi-row statement."""
        if not records:
            return 0
        if len(records) * len(self.COLUMNS) > self._max_params:
            raise ValueError(
                f"Sub-batch of {len(records)} records exceeds {self._max_params} parameters"
            )
        now = _now_iso()
        row_sql = "(" + ", ".join("?" for _ in self.COLUMNS) + ")"
        params: list[Any] = []
        for record in records:
            params.extend(self._row_params(dataset, record, now))
        self._db.execute(
            f"INSERT OR REPLACE INTO watchlist_record ({', '.join(self.COLUMNS)}) "
            f"VALUES {', '.join(row_sql for _ in records)}",
            params,
        )
        return len(records)

    def upsert(self, dataset: str, record: WatchlistRecordIn) -> None:
        """Insert one record, or update it in place keeping created_at."""
        now = _now_iso()
        updatable = [c for c in self.COLUMNS if c not in ("dataset", "id", "created_at")]
        self._db.execute(
            f"INSERT INTO watchlist_record ({', '.join(self.COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in self.COLUMNS)}) "
            "ON CONFLICT(dataset, id) DO UPDATE SET "
            + ", ".join(f"{c} = excluded.{c}" for c in updatable),
            self._row_params(dataset, record, now),
        )

    def truncate(self, dataset: str) -> int:
        """Delete every record and identifier row of a dataset. Returns records deleted."""
        with self._db.transaction():
            count = self.count(dataset)
            self._db.execute("DELETE FROM watchlist_record WHERE dataset = ?", (dataset,))
            self._db.execute("DELETE FROM watchlist_identifier WHERE dataset = ?", (dataset,))
        return count

    def count(self, dataset: str) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) AS n FROM watchlist_record WHERE dataset = ?", (dataset,)
        )
        return int(row["n"]) if row else 0

    def get(self, dataset: str, record_id: str) -> WatchlistRecord | None:
        row = self._db.fetchone(
            "SELECT * FROM watchlist_record WHERE dataset = ? AND id = ?",
            (dataset, record_id),
        )
        return WatchlistRecord.from_row(row) if row else None

    def get_many(self, dataset: str, record_ids: Sequence[str]) -> list[WatchlistRecord]:
        """Fetch records by id, chunked under the parameter ceiling."""
        ids = list(dict.fromkeys(record_ids))
        records: list[WatchlistRecord] = []
        for chunk in _chunks(ids, max(1, self._max_params - 1)):
            rows = self._db.fetchall(
                f"SELECT * FROM watchlist_record WHERE dataset = ? "
                f"AND id IN ({', '.join('?' for _ in chunk)})",
                (dataset, *chunk),
            )
            records.extend(WatchlistRecord.from_row(r) for r in rows)
        return records

    def page(self, dataset: str, offset: int, limit: int) -> list[WatchlistRecord]:
        """Records ordered by primary key, for batch indexing."""
        rows = self._db.fetchall(
            "SELECT * FROM watchlist_record WHERE dataset = ? ORDER BY id LIMIT ? OFFSET ?",
            (dataset, limit, offset),
        )
        return [WatchlistRecord.from_row(r) for r in rows]

    def list_ids(self, dataset: str) -> list[str]:
        rows = self._db.fetchall(
            "SELECT id FROM watchlist_record WHERE dataset = ? ORDER BY id", (dataset,)
        )
        return [r["id"] for r in rows]

    def query(
        self,
        dataset: str,
        name_prefix: str | None = None,
        party_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WatchlistRecord], int]:
        """List records with optional name prefix and party type filters.

        Returns the page and the total number of matching records.
        """
        where = "WHERE dataset = ?"
        params: list[Any] = [dataset]
        if name_prefix:
            where += " AND primary_name LIKE ? COLLATE NOCASE"
            params.append(f"{name_prefix}%")
        if party_type:
            where += " AND party_type = ?"
            params.append(party_type)

        total_row = self._db.fetchone(
            f"SELECT COUNT(*) AS n FROM watchlist_record {where}", params
        )
        rows = self._db.fetchall(
            f"SELECT * FROM watchlist_record {where} ORDER BY id LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        total = int(total_row["n"]) if total_row else 0
        return [WatchlistRecord.from_row(r) for r in rows], total


class IdentifierRepo:
    """Repository for the exact-match identifier index."""

    def __init__(self, db: SQLiteDB, max_params: int = 100) -> None:
        self._db = db
        self._max_params = max_params

    @staticmethod
    def index_rows(
        dataset: str, record_id: str, identifiers: Iterable[Identifier]
    ) -> list[tuple[str, str, str | None, str, str]]:
        """Normalized identifier rows for one record; blank numbers are dropped."""
        rows = []
        for ident in identifiers:
            norm = normalize_identifier(ident.number or "")
            if not norm:
                continue
            id_type = normalize_identifier_type(ident.type) if ident.type else None
            rows.append((dataset, record_id, id_type, ident.number, norm))
        return rows

    def replace_for_records(self, dataset: str, records: Sequence[WatchlistRecordIn]) -> int:
        """Rebuild the identifier rows of the given records. Returns rows written."""
        if not records:
            return 0
        rows = []
        for record in records:
            rows.extend(self.index_rows(dataset, record.id, record.identifiers))
        with self._db.transaction():
            for chunk in _chunks([r.id for r in records], max(1, self._max_params - 1)):
                self._db.execute(
                    f"DELETE FROM watchlist_identifier WHERE dataset = ? "
                    f"AND record_id IN ({', '.join('?' for _ in chunk)})",
                    (dataset, *chunk),
                )
            if rows:
                self._db.executemany(
                    "INSERT INTO watchlist_identifier "
                    "(dataset, record_id, identifier_type, identifier_raw, identifier_norm) "
                    "VALUES (?, ?, ?, ?, ?)",
                    rows,
                )
        return len(rows)

    def lookup(self, normalized: Sequence[str]) -> list[tuple[str, str]]:
        """Distinct (dataset, record_id) pairs holding any of the normalized ids."""
        values = [v for v in dict.fromkeys(normalized) if v]
        found: list[tuple[str, str]] = []
        for chunk in _chunks(values, self._max_params):
            rows = self._db.fetchall(
                "SELECT DISTINCT dataset, record_id FROM watchlist_identifier "
                f"WHERE identifier_norm IN ({', '.join('?' for _ in chunk)}) "
                "ORDER BY dataset, record_id",
                chunk,
            )
            found.extend((r["dataset"], r["record_id"]) for r in rows)
        return list(dict.fromkeys(found))

    def count(self, dataset: str) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) AS n FROM watchlist_identifier WHERE dataset = ?", (dataset,)
        )
        return int(row["n"]) if row else 0


class IngestionRunRepo:
    """Repository for ingestion runs and their progress fields."""

    _UPDATABLE = {
        "status", "source_url", "finished_at", "progress_phase", "progress_records_processed",
        "progress_total_estimate", "progress_percentage", "progress_current_batch",
        "progress_updated_at", "vectorize_job_id", "stats", "error_message",
    }

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    def create(
        self,
        dataset: str,
        source_type: str,
        source_url: str,
        stats: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a pending run and return it."""
        now = _now_iso()
        cursor = self._db.execute(
            "INSERT INTO ingestion_run "
            "(dataset, source_type, source_url, status, started_at, stats, updated_at) "
            "VALUES (?, ?, ?, 'pending', ?, ?, ?)",
            (dataset, source_type, source_url, now, json.dumps(stats or {}), now),
        )
        return self.get(cursor.lastrowid)  # type: ignore[arg-type,return-value]

    def get(self, run_id: int) -> dict[str, Any] | None:
        return self._db.fetchone("SELECT * FROM ingestion_run WHERE id = ?", (run_id,))

    def require(self, run_id: int) -> dict[str, Any]:
        run = self.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Ingestion run {run_id} not found")
        return run

    def list_runs(
        self,
        status: str | None = None,
        dataset: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List runs newest first with optional status and dataset filters."""
        sql = "SELECT * FROM ingestion_run WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        if dataset is not None:
            sql += " AND dataset = ?"
            params.append(dataset)
        sql += " ORDER BY id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return self._db.fetchall(sql, params)

    def update(self, run_id: int, **fields: Any) -> bool:
        """Update the given columns. Returns False when the run does not exist."""
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update ingestion_run columns: {sorted(unknown)}")
        if "stats" in fields and not isinstance(fields["stats"], (str, type(None))):
            fields["stats"] = json.dumps(fields["stats"])
        fields["updated_at"] = _now_iso()
        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = self._db.execute(
            f"UPDATE ingestion_run SET {assignments} WHERE id = ?",
            (*fields.values(), run_id),
        )
        return cursor.rowcount > 0

    def record_batch_progress(
        self,
        run_id: int,
        inserted: int,
        percentage: int,
        batch_number: int,
    ) -> bool:
        """Add *inserted* to the processed counter and store batch progress.

        The increment happens in SQL so concurrent batch callbacks do not
        overwrite each other's counts.
        """
        now = _now_iso()
        cursor = self._db.execute(
            "UPDATE ingestion_run SET "
            "progress_phase = 'inserting', "
            "progress_records_processed = progress_records_processed + ?, "
            "progress_percentage = ?, progress_current_batch = ?, "
            "progress_updated_at = ?, updated_at = ? "
            "WHERE id = ?",
            (inserted, percentage, batch_number, now, now, run_id),
        )
        return cursor.rowcount > 0

    def latest_with_vectorize_job(self, dataset: str) -> dict[str, Any] | None:
        return self._db.fetchone(
            "SELECT * FROM ingestion_run WHERE dataset = ? AND vectorize_job_id IS NOT NULL "
            "ORDER BY id DESC LIMIT 1",
            (dataset,),
        )


class SearchQueryRepo:
    """Repository for screening queries and their asynchronous PEP verdicts."""

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    def create(
        self,
        query: str,
        birth_date: str | None = None,
        identifiers: list[str] | None = None,
        pep_status: str = "skipped",
    ) -> dict[str, Any]:
        query_id = _new_id()
        now = _now_iso()
        self._db.execute(
            "INSERT INTO search_query "
            "(id, query, birth_date, identifiers, status, pep_status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'pending', ?, ?, ?)",
            (
                query_id, query, birth_date,
                json.dumps(identifiers) if identifiers else None,
                pep_status, now, now,
            ),
        )
        return self.get(query_id)  # type: ignore[return-value]

    def get(self, query_id: str) -> dict[str, Any] | None:
        return self._db.fetchone("SELECT * FROM search_query WHERE id = ?", (query_id,))

    def store_matches(self, query_id: str, matches: list[dict[str, Any]]) -> bool:
        cursor = self._db.execute(
            "UPDATE search_query SET status = 'completed', match_count = ?, result = ?, "
            "updated_at = ? WHERE id = ?",
            (len(matches), json.dumps(matches) if matches else None, _now_iso(), query_id),
        )
        return cursor.rowcount > 0

    def mark_failed(self, query_id: str) -> bool:
        cursor = self._db.execute(
            "UPDATE search_query SET status = 'failed', updated_at = ? WHERE id = ?",
            (_now_iso(), query_id),
        )
        return cursor.rowcount > 0

    def set_pep_status(self, query_id: str, status: str, result: Any = None) -> bool:
        cursor = self._db.execute(
            "UPDATE search_query SET pep_status = ?, pep_result = ?, updated_at = ? "
            "WHERE id = ?",
            (status, json.dumps(result) if result is not None else None, _now_iso(), query_id),
        )
        return cursor.rowcount > 0
