"""Ingestion run lifecycle and batch loading into the Record Store.

A run moves ``pending -> running -> {completed, failed}`` and never back.
The heavy lifting (parsing the uploaded file) happens on the external job
service, which calls back into Tripwire:

    start_run        -> pending run + upload location
    complete_upload  -> pending -> running, parse job queued
    truncate         -> dataset emptied, progress reset to inserting/0%
    insert_batch     -> records upserted in sub-batches (xN)
    complete         -> completed, vectorization job queued
    fail             -> failed with a truncated message

Callbacks referencing a run that does not exist are logged and
acknowledged: the worker may legitimately be running against a run that
was cleaned up, or outside of any run during manual testing.

Sub-batches keep each INSERT under the store's bound-parameter ceiling.
When a sub-batch insert fails, its records are retried one by one so a
single bad record only costs itself.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

from tripwire.cache.query_cache import QueryCache
from tripwire.config import ConfigurationError
from tripwire.datasets import get_dataset
from tripwire.db.models import WatchlistRecordIn
from tripwire.db.repositories import (
    IdentifierRepo,
    IngestionRunRepo,
    RecordRepo,
)
from tripwire.db.sqlite import SQLiteDB
from tripwire.ingestion.progress import clamp_percentage
from tripwire.jobs.client import (
    TASK_PARSE_SOURCE,
    TASK_VECTORIZE_INDEX,
    JobServiceClient,
    JobServiceError,
)

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 100
MAX_ERROR_MESSAGE_CHARS = 1000
DEFAULT_PARSE_BATCH_SIZE = 500
VECTORIZE_BATCH_SIZE = 100

_ALLOWED_TRANSITIONS = {
    "pending": {"running", "failed"},
    "running": {"running", "completed", "failed"},
}


class InvalidStateError(Exception):
    """Raised when an operation does not apply to the run's current state."""


@dataclass
class BatchResult:
    inserted: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CompleteResult:
    vectorization_thread_id: str | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def truncate_message(message: str) -> str:
    return message[:MAX_ERROR_MESSAGE_CHARS]


class IngestionOrchestrator:
    """Drives ingestion runs and their batch callbacks.

    Parameters
    ----------
    db : SQLiteDB
        Shared database, used to make each sub-batch and its identifier
        rows atomic.
    records, identifiers, runs : repositories
        Record Store, Identifier Index and run persistence.
    upload_dir : Path
        Root directory for uploaded source files.
    jobs : JobServiceClient | None
        External job service. None when not configured.
    callback_base_url : str
        Base URL the job service uses to call back into this service.
    runs_cache, records_cache : QueryCache | None
        Caches invalidated by run and record writes.
    """

    def __init__(
        self,
        db: SQLiteDB,
        records: RecordRepo,
        identifiers: IdentifierRepo,
        runs: IngestionRunRepo,
        upload_dir: Path,
        jobs: JobServiceClient | None = None,
        callback_base_url: str = "http://localhost:8000",
        runs_cache: QueryCache | None = None,
        records_cache: QueryCache | None = None,
    ) -> None:
        self._db = db
        self._records = records
        self._identifiers = identifiers
        self._runs = runs
        self._upload_dir = Path(upload_dir)
        self._jobs = jobs
        self._callback_base_url = callback_base_url.rstrip("/")
        self._runs_cache = runs_cache
        self._records_cache = records_cache

    # -- Cache ----------------------------------------------------------------

    def _runs_changed(self) -> None:
        if self._runs_cache is not None:
            self._runs_cache.invalidate()

    def _records_changed(self) -> None:
        if self._records_cache is not None:
            self._records_cache.invalidate()

    # -- State machine ----------------------------------------------------------

    def _find_run(self, run_id: int, operation: str) -> dict[str, Any] | None:
        run = self._runs.get(run_id)
        if run is None:
            logger.info("Run %s not found during %s (may not exist), continuing", run_id, operation)
        return run

    @staticmethod
    def _check_transition(run: dict[str, Any], target: str) -> None:
        current = run["status"]
        if target not in _ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidStateError(
                f"Run {run['id']} is {current}, cannot move to {target}"
            )

    # -- Upload flow --------------------------------------------------------------

    def upload_path(self, run_id: int) -> Path:
        return self._upload_dir / "runs" / str(run_id) / "source"

    def start_run(
        self,
        dataset: str,
        source_type: str,
        file_name: str | None = None,
        batch_size: int | None = None,
    ) -> dict[str, Any]:
        """Create a pending run awaiting its source file.

        Raises
        ------
        UnknownDatasetError
            If *dataset* is not registered.
        ValueError
            If *source_type* is not accepted by the dataset.
        """
        spec = get_dataset(dataset)
        if spec.source_types and source_type not in spec.source_types:
            raise ValueError(
                f"Source type {source_type!r} is not supported for {dataset}. "
                f"Allowed: {', '.join(spec.source_types)}"
            )
        run = self._runs.create(
            dataset=dataset,
            source_type=source_type,
            source_url="",
            stats={"fileName": file_name, "batchSize": batch_size or DEFAULT_PARSE_BATCH_SIZE},
        )
        path = self.upload_path(run["id"])
        self._runs.update(run["id"], progress_phase="idle", source_url=path.resolve().as_uri())
        self._runs_changed()
        logger.info("Created %s ingestion run %s", dataset, run["id"])
        return self._runs.require(run["id"])

    def save_upload(self, run_id: int, content: bytes) -> Path:
        """Store the uploaded source file of a pending run."""
        run = self._runs.require(run_id)
        if run["status"] != "pending":
            raise InvalidStateError(f"Run {run_id} is {run['status']}, uploads need a pending run")
        path = self.upload_path(run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    async def complete_upload(self, run_id: int) -> dict[str, Any]:
        """Confirm the upload and queue the parse job.

        Raises
        ------
        RunNotFoundError
            If the run does not exist.
        InvalidStateError
            If the run is not pending or its source file is missing.
        ConfigurationError
            If no job service is configured. The run is marked failed first.
        JobServiceError
            If the parse job could not be queued. The run is marked failed first.
        """
        run = self._runs.require(run_id)
        if run["status"] != "pending":
            raise InvalidStateError(f"Run {run_id} is {run['status']}, expected pending")
        path = self.upload_path(run_id)
        if not path.is_file():
            raise InvalidStateError(f"Uploaded file for run {run_id} was not found")

        if self._jobs is None:
            self._mark_failed(run_id, "Job service is not configured")
            raise ConfigurationError("Job service is not configured")

        stats = json.loads(run["stats"]) if run.get("stats") else {}
        batch_size = stats.get("batchSize") or DEFAULT_PARSE_BATCH_SIZE

        try:
            thread_id = await self._jobs.create_thread(
                TASK_PARSE_SOURCE,
                {
                    "run_id": run_id,
                    "dataset": run["dataset"],
                    "source_type": run["source_type"],
                    "source_url": run["source_url"],
                    "batch_size": batch_size,
                    "callback_url": self._callback_base_url,
                },
                {"source": "upload", "run_id": run_id},
            )
        except JobServiceError as exc:
            self._mark_failed(run_id, f"Failed to queue parse job: {exc}")
            raise

        self._runs.update(
            run_id,
            status="running",
            progress_phase="initializing",
            progress_updated_at=_now_iso(),
        )
        self._runs_changed()
        logger.info("Run %s running, parse job %s queued", run_id, thread_id)
        return self._runs.require(run_id)

    # -- Batch callbacks ------------------------------------------------------------

    def truncate(self, dataset: str, run_id: int) -> int:
        """Empty the dataset and reset the run's progress. Returns records deleted."""
        get_dataset(dataset)
        run = self._find_run(run_id, "truncate")
        if run is not None:
            self._check_transition(run, "running")

        deleted = self._records.truncate(dataset)
        logger.info("Deleted %d records from %s for run %s", deleted, dataset, run_id)
        self._records_changed()

        if run is not None:
            self._runs.update(
                run_id,
                status="running",
                progress_phase="inserting",
                progress_records_processed=0,
                progress_percentage=0,
                progress_current_batch=0,
                progress_updated_at=_now_iso(),
            )
            self._runs_changed()
        return deleted

    def insert_batch(
        self,
        dataset: str,
        run_id: int,
        batch_number: int,
        records: Sequence[WatchlistRecordIn | dict[str, Any]],
        total_batches: int | None = None,
    ) -> BatchResult:
        """Upsert one batch of records and update the run's progress.

        Records that fail validation or insertion are reported in the
        result's error list; the rest of the batch still goes in.
        """
        spec = get_dataset(dataset)
        run = self._find_run(run_id, "batch")
        if run is not None and run["status"] != "running":
            raise InvalidStateError(f"Run {run_id} is {run['status']}, batches need a running run")

        result = BatchResult()
        valid: list[WatchlistRecordIn] = []
        for raw in records:
            try:
                record = raw if isinstance(raw, WatchlistRecordIn) else WatchlistRecordIn.model_validate(raw)
            except ValidationError as exc:
                record_id = raw.get("id", "?") if isinstance(raw, dict) else "?"
                result.errors.append(f"Invalid record {record_id}: {exc.error_count()} validation errors")
                continue
            if not record.source_list:
                record = record.model_copy(update={"source_list": spec.source_list})
            valid.append(record)

        logger.info(
            "Inserting batch %s with %d records for run %s", batch_number, len(valid), run_id
        )

        size = self._records.sub_batch_size
        for i in range(0, len(valid), size):
            sub_batch = valid[i:i + size]
            try:
                with self._db.transaction():
                    self._records.bulk_insert(dataset, sub_batch)
                    self._identifiers.replace_for_records(dataset, sub_batch)
                result.inserted += len(sub_batch)
            except (sqlite3.Error, ValueError) as exc:
                logger.warning("Sub-batch insert failed, using individual inserts: %s", exc)
                inserted, errors = self._insert_individually(dataset, sub_batch)
                result.inserted += inserted
                result.errors.extend(errors)

        if result.inserted:
            self._records_changed()

        if run is not None:
            percentage = clamp_percentage(batch_number / total_batches * 100) if total_batches else 0
            self._runs.record_batch_progress(run_id, result.inserted, percentage, batch_number)
            self._runs_changed()

        logger.info(
            "Batch %s complete: inserted=%d, errors=%d",
            batch_number, result.inserted, len(result.errors),
        )
        return result

    def _insert_individually(
        self, dataset: str, records: Sequence[WatchlistRecordIn]
    ) -> tuple[int, list[str]]:
        inserted = 0
        errors: list[str] = []
        for record in records:
            try:
                with self._db.transaction():
                    self._records.upsert(dataset, record)
                    self._identifiers.replace_for_records(dataset, [record])
                inserted += 1
            except (sqlite3.Error, ValueError) as exc:
                errors.append(f"Failed to insert {record.id}: {exc}")
        return inserted, errors

    async def complete(
        self,
        dataset: str,
        run_id: int,
        total_records: int,
        total_batches: int,
        errors: Sequence[str] | None = None,
        skip_vectorization: bool = False,
    ) -> CompleteResult:
        """Mark the run completed and queue vectorization.

        Vectorization is skipped when asked to, when no records were
        loaded, or when no job service is configured. Failing to queue it
        is logged; the run stays completed and vectorization can be
        triggered by hand.
        """
        get_dataset(dataset)
        run = self._find_run(run_id, "complete")
        if run is not None:
            if run["status"] == "completed":
                logger.info("Run %s already completed", run_id)
                return CompleteResult(vectorization_thread_id=run.get("vectorize_job_id"))
            self._check_transition(run, "completed")
            now = _now_iso()
            self._runs.update(
                run_id,
                status="completed",
                finished_at=now,
                progress_phase="completed",
                progress_percentage=100,
                progress_records_processed=total_records,
                progress_total_estimate=total_records,
                progress_updated_at=now,
                stats={
                    "totalRecords": total_records,
                    "totalBatches": total_batches,
                    "errors": list(errors or [])[:MAX_STORED_ERRORS],
                },
            )
            self._runs_changed()
            logger.info("Run %s marked as completed", run_id)

        result = CompleteResult()
        if skip_vectorization or total_records <= 0:
            return result
        if self._jobs is None:
            logger.info("Job service not configured, skipping vectorization for %s", dataset)
            return result

        try:
            result.vectorization_thread_id = await self.queue_vectorization(
                dataset,
                triggered_by=f"{dataset}_ingestion_run_{run_id}",
                metadata={"source": "auto_trigger", "run_id": run_id, "total_records": total_records},
            )
        except JobServiceError as exc:
            logger.error("Failed to trigger vectorization for run %s: %s", run_id, exc)
            return result

        if run is not None:
            self._runs.update(run_id, vectorize_job_id=result.vectorization_thread_id)
            self._runs_changed()
        return result

    async def queue_vectorization(
        self,
        dataset: str,
        triggered_by: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Queue a full reindex of *dataset* and return the job's thread id.

        Raises
        ------
        ConfigurationError
            If no job service is configured.
        JobServiceError
            If the job could not be created.
        """
        get_dataset(dataset)
        if self._jobs is None:
            raise ConfigurationError("Job service is not configured")
        thread_id = await self._jobs.create_thread(
            TASK_VECTORIZE_INDEX,
            {
                "dataset": dataset,
                "reindex_all": True,
                "batch_size": VECTORIZE_BATCH_SIZE,
                "callback_url": self._callback_base_url,
                "triggered_by": triggered_by,
            },
            metadata or {},
        )
        logger.info("Vectorization thread created for %s: %s", dataset, thread_id)
        return thread_id

    def fail(self, dataset: str, run_id: int, error: str) -> None:
        """Mark the run failed. Unknown runs and repeated failures are no-ops."""
        get_dataset(dataset)
        run = self._find_run(run_id, "failed")
        if run is None:
            return
        if run["status"] == "failed":
            logger.info("Run %s already failed", run_id)
            return
        self._check_transition(run, "failed")
        logger.info("Marking run %s as failed: %s", run_id, truncate_message(error))
        self._mark_failed(run_id, error)

    def _mark_failed(self, run_id: int, error: str) -> None:
        now = _now_iso()
        self._runs.update(
            run_id,
            status="failed",
            finished_at=now,
            progress_phase="failed",
            progress_updated_at=now,
            error_message=truncate_message(error),
        )
        self._runs_changed()

