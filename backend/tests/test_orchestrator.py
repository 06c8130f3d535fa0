"""Tests for the ingestion run lifecycle and batch loading."""

from __future__ import annotations

import json
import sqlite3

import pytest

from tripwire.cache import QueryCache, SQLiteKV
from tripwire.config import ConfigurationError
from tripwire.db.repositories import RecordRepo, RunNotFoundError
from tripwire.ingestion.orchestrator import (
    MAX_ERROR_MESSAGE_CHARS,
    IngestionOrchestrator,
    InvalidStateError,
)
from tripwire.jobs.client import TASK_PARSE_SOURCE, TASK_VECTORIZE_INDEX, JobServiceError


@pytest.fixture
def runs_cache(db):
    return QueryCache(SQLiteKV(db), "runs")


@pytest.fixture
def orchestrator(db, record_repo, identifier_repo, run_repo, tmp_path, jobs, runs_cache):
    return IngestionOrchestrator(
        db,
        record_repo,
        identifier_repo,
        run_repo,
        upload_dir=tmp_path / "uploads",
        jobs=jobs,
        callback_base_url="http://tripwire.test/",
        runs_cache=runs_cache,
    )


@pytest.fixture
def running_run(orchestrator, run_repo):
    run = orchestrator.start_run("ofac_sdn", "sdn_xml")
    run_repo.update(run["id"], status="running")
    return run_repo.get(run["id"])


# -- Upload flow -----------------------------------------------------------------------

class TestUploadFlow:
    def test_start_run_is_pending_with_upload_location(self, orchestrator):
        run = orchestrator.start_run("ofac_sdn", "sdn_xml", file_name="sdn.xml", batch_size=250)
        assert run["status"] == "pending"
        assert run["progress_phase"] == "idle"
        assert run["source_url"].startswith("file://")
        assert run["source_url"].endswith(f"/runs/{run['id']}/source")
        assert json.loads(run["stats"]) == {"fileName": "sdn.xml", "batchSize": 250}

    def test_start_run_rejects_wrong_source_type(self, orchestrator):
        with pytest.raises(ValueError, match="not supported"):
            orchestrator.start_run("ofac_sdn", "sat69b_csv")

    async def test_complete_upload_queues_parse_job(self, orchestrator, jobs):
        run = orchestrator.start_run("ofac_sdn", "sdn_xml", batch_size=250)
        orchestrator.save_upload(run["id"], b"<sdnList/>")

        updated = await orchestrator.complete_upload(run["id"])
        assert updated["status"] == "running"
        assert updated["progress_phase"] == "initializing"

        [thread] = jobs.threads
        assert thread["task_type"] == TASK_PARSE_SOURCE
        assert thread["job_params"]["run_id"] == run["id"]
        assert thread["job_params"]["batch_size"] == 250
        assert thread["job_params"]["callback_url"] == "http://tripwire.test"

    async def test_complete_upload_without_file(self, orchestrator):
        run = orchestrator.start_run("ofac_sdn", "sdn_xml")
        with pytest.raises(InvalidStateError, match="not found"):
            await orchestrator.complete_upload(run["id"])

    async def test_complete_upload_unknown_run(self, orchestrator):
        with pytest.raises(RunNotFoundError):
            await orchestrator.complete_upload(404)

    async def test_complete_upload_twice(self, orchestrator):
        run = orchestrator.start_run("ofac_sdn", "sdn_xml")
        orchestrator.save_upload(run["id"], b"<sdnList/>")
        await orchestrator.complete_upload(run["id"])
        with pytest.raises(InvalidStateError):
            await orchestrator.complete_upload(run["id"])

    async def test_job_service_failure_marks_run_failed(self, orchestrator, jobs, run_repo):
        jobs.fail = True
        run = orchestrator.start_run("ofac_sdn", "sdn_xml")
        orchestrator.save_upload(run["id"], b"<sdnList/>")
        with pytest.raises(JobServiceError):
            await orchestrator.complete_upload(run["id"])
        stored = run_repo.get(run["id"])
        assert stored["status"] == "failed"
        assert "Failed to queue parse job" in stored["error_message"]

    async def test_missing_job_service_marks_run_failed(
        self, db, record_repo, identifier_repo, run_repo, tmp_path
    ):
        orchestrator = IngestionOrchestrator(
            db, record_repo, identifier_repo, run_repo, upload_dir=tmp_path / "uploads"
        )
        run = orchestrator.start_run("ofac_sdn", "sdn_xml")
        orchestrator.save_upload(run["id"], b"<sdnList/>")
        with pytest.raises(ConfigurationError):
            await orchestrator.complete_upload(run["id"])
        assert run_repo.get(run["id"])["status"] == "failed"

    def test_upload_needs_pending_run(self, orchestrator, running_run):
        with pytest.raises(InvalidStateError):
            orchestrator.save_upload(running_run["id"], b"x")


# -- Batch callbacks --------------------------------------------------------------------

class TestTruncate:
    def test_truncate_resets_progress(self, orchestrator, running_run, run_repo, record_factory):
        orchestrator.insert_batch("ofac_sdn", running_run["id"], 1, [record_factory("1", "Juan Perez")], 1)

        deleted = orchestrator.truncate("ofac_sdn", running_run["id"])
        assert deleted == 1
        stored = run_repo.get(running_run["id"])
        assert stored["status"] == "running"
        assert stored["progress_phase"] == "inserting"
        assert stored["progress_records_processed"] == 0
        assert stored["progress_percentage"] == 0

    def test_truncate_unknown_run_still_truncates(self, orchestrator, record_repo, record_factory):
        orchestrator.insert_batch("ofac_sdn", 999, 1, [record_factory("1", "Juan Perez")])
        assert orchestrator.truncate("ofac_sdn", 999) == 1
        assert record_repo.count("ofac_sdn") == 0

    def test_truncate_completed_run_rejected(self, orchestrator, running_run, run_repo):
        run_repo.update(running_run["id"], status="completed")
        with pytest.raises(InvalidStateError):
            orchestrator.truncate("ofac_sdn", running_run["id"])


class TestInsertBatch:
    def test_inserts_records_and_identifiers(
        self, orchestrator, running_run, record_repo, identifier_repo, record_factory
    ):
        records = [
            record_factory(str(i), f"Person {i}", identifiers=[{"type": "Passport", "number": f"P-{i}"}])
            for i in range(20)
        ]
        result = orchestrator.insert_batch("ofac_sdn", running_run["id"], 1, records, total_batches=4)

        assert result.inserted == 20
        assert result.errors == []
        assert record_repo.count("ofac_sdn") == 20
        assert identifier_repo.lookup(["P7"]) == [("ofac_sdn", "7")]
        assert record_repo.get("ofac_sdn", "3").source_list == "SDN"

    def test_progress_percentage(self, orchestrator, running_run, run_repo, record_factory):
        orchestrator.insert_batch("ofac_sdn", running_run["id"], 1, [record_factory("1", "A B")], total_batches=3)
        stored = run_repo.get(running_run["id"])
        assert stored["progress_percentage"] == 33
        assert stored["progress_current_batch"] == 1
        assert stored["progress_records_processed"] == 1

        orchestrator.insert_batch("ofac_sdn", running_run["id"], 2, [record_factory("2", "C D")], total_batches=3)
        stored = run_repo.get(running_run["id"])
        assert stored["progress_percentage"] == 67
        assert stored["progress_records_processed"] == 2

    def test_invalid_records_reported(self, orchestrator, running_run, record_factory):
        records = [record_factory("1", "Juan Perez"), {"id": "2"}, record_factory("3", "X", party_type="Alien")]
        result = orchestrator.insert_batch("ofac_sdn", running_run["id"], 1, records)
        assert result.inserted == 1
        assert len(result.errors) == 2
        assert result.errors[0].startswith("Invalid record 2")

    def test_sub_batch_failure_falls_back_to_single_inserts(
        self, orchestrator, running_run, record_repo, record_factory, monkeypatch
    ):
        def failing_bulk_insert(self, dataset, records):
            raise sqlite3.OperationalError("too many SQL variables")

        monkeypatch.setattr(RecordRepo, "bulk_insert", failing_bulk_insert)
        records = [record_factory(str(i), f"Person {i}") for i in range(10)]
        result = orchestrator.insert_batch("ofac_sdn", running_run["id"], 1, records)

        assert result.inserted == 10
        assert result.errors == []
        assert record_repo.count("ofac_sdn") == 10

    def test_single_insert_failure_only_costs_that_record(
        self, orchestrator, running_run, record_repo, record_factory, monkeypatch
    ):
        original_upsert = RecordRepo.upsert

        def failing_bulk_insert(self, dataset, records):
            raise sqlite3.OperationalError("too many SQL variables")

        def picky_upsert(self, dataset, record):
            if record.id == "bad":
                raise sqlite3.IntegrityError("constraint failed")
            original_upsert(self, dataset, record)

        monkeypatch.setattr(RecordRepo, "bulk_insert", failing_bulk_insert)
        monkeypatch.setattr(RecordRepo, "upsert", picky_upsert)
        records = [record_factory("good", "A B"), record_factory("bad", "C D")]
        result = orchestrator.insert_batch("ofac_sdn", running_run["id"], 1, records)

        assert result.inserted == 1
        assert result.errors == ["Failed to insert bad: constraint failed"]
        assert record_repo.get("ofac_sdn", "bad") is None

    def test_batch_for_pending_run_rejected(self, orchestrator, record_factory):
        run = orchestrator.start_run("ofac_sdn", "sdn_xml")
        with pytest.raises(InvalidStateError):
            orchestrator.insert_batch("ofac_sdn", run["id"], 1, [record_factory("1", "A B")])

    def test_batch_invalidates_runs_cache(self, orchestrator, running_run, runs_cache, record_factory):
        before = runs_cache.get_version()
        orchestrator.insert_batch("ofac_sdn", running_run["id"], 1, [record_factory("1", "A B")])
        assert runs_cache.get_version() != before


class TestComplete:
    async def test_complete_queues_vectorization(self, orchestrator, running_run, run_repo, jobs):
        result = await orchestrator.complete("ofac_sdn", running_run["id"], 120, 3, errors=["e1"])

        assert result.vectorization_thread_id == "thread-1"
        stored = run_repo.get(running_run["id"])
        assert stored["status"] == "completed"
        assert stored["finished_at"] is not None
        assert stored["progress_percentage"] == 100
        assert stored["vectorize_job_id"] == "thread-1"
        assert json.loads(stored["stats"]) == {"totalRecords": 120, "totalBatches": 3, "errors": ["e1"]}

        [thread] = jobs.threads
        assert thread["task_type"] == TASK_VECTORIZE_INDEX
        assert thread["job_params"] == {
            "dataset": "ofac_sdn",
            "reindex_all": True,
            "batch_size": 100,
            "callback_url": "http://tripwire.test",
            "triggered_by": f"ofac_sdn_ingestion_run_{running_run['id']}",
        }

    async def test_complete_stores_at_most_100_errors(self, orchestrator, running_run, run_repo):
        errors = [f"error {i}" for i in range(150)]
        await orchestrator.complete("ofac_sdn", running_run["id"], 1, 1, errors=errors)
        stats = json.loads(run_repo.get(running_run["id"])["stats"])
        assert len(stats["errors"]) == 100

    async def test_skip_vectorization(self, orchestrator, running_run, jobs):
        result = await orchestrator.complete("ofac_sdn", running_run["id"], 10, 1, skip_vectorization=True)
        assert result.vectorization_thread_id is None
        assert jobs.threads == []

    async def test_zero_records_skips_vectorization(self, orchestrator, running_run, jobs):
        await orchestrator.complete("ofac_sdn", running_run["id"], 0, 0)
        assert jobs.threads == []

    async def test_vectorization_failure_keeps_run_completed(self, orchestrator, running_run, run_repo, jobs):
        jobs.fail = True
        result = await orchestrator.complete("ofac_sdn", running_run["id"], 10, 1)
        assert result.vectorization_thread_id is None
        stored = run_repo.get(running_run["id"])
        assert stored["status"] == "completed"
        assert stored["vectorize_job_id"] is None

    async def test_complete_is_idempotent(self, orchestrator, running_run, jobs):
        await orchestrator.complete("ofac_sdn", running_run["id"], 10, 1)
        result = await orchestrator.complete("ofac_sdn", running_run["id"], 10, 1)
        assert result.vectorization_thread_id == "thread-1"
        assert len(jobs.threads) == 1

    async def test_complete_failed_run_rejected(self, orchestrator, running_run):
        orchestrator.fail("ofac_sdn", running_run["id"], "boom")
        with pytest.raises(InvalidStateError):
            await orchestrator.complete("ofac_sdn", running_run["id"], 10, 1)

    async def test_queue_vectorization_without_job_service(
        self, db, record_repo, identifier_repo, run_repo, tmp_path
    ):
        orchestrator = IngestionOrchestrator(
            db, record_repo, identifier_repo, run_repo, upload_dir=tmp_path / "uploads"
        )
        with pytest.raises(ConfigurationError):
            await orchestrator.queue_vectorization("ofac_sdn", triggered_by="admin")


class TestFail:
    def test_fail_truncates_message(self, orchestrator, running_run, run_repo):
        orchestrator.fail("ofac_sdn", running_run["id"], "x" * 5000)
        stored = run_repo.get(running_run["id"])
        assert stored["status"] == "failed"
        assert stored["progress_phase"] == "failed"
        assert len(stored["error_message"]) == MAX_ERROR_MESSAGE_CHARS

    def test_fail_unknown_run_is_noop(self, orchestrator):
        orchestrator.fail("ofac_sdn", 999, "boom")

    def test_fail_twice_keeps_first_message(self, orchestrator, running_run, run_repo):
        orchestrator.fail("ofac_sdn", running_run["id"], "first")
        orchestrator.fail("ofac_sdn", running_run["id"], "second")
        assert run_repo.get(running_run["id"])["error_message"] == "first"

    async def test_fail_completed_run_rejected(self, orchestrator, running_run):
        await orchestrator.complete("ofac_sdn", running_run["id"], 0, 0)
        with pytest.raises(InvalidStateError):
            orchestrator.fail("ofac_sdn", running_run["id"], "late")
