"""Shared fixtures: a temp database, repositories and in-memory stand-ins
for the embedding API and the vector index."""

from __future__ import annotations

import math
import zlib
from typing import Any

import pytest
from fastapi.testclient import TestClient

from tripwire.cache import QueryCache, SQLiteKV
from tripwire.config import Settings
from tripwire.db.repositories import (
    IdentifierRepo,
    IngestionRunRepo,
    RecordRepo,
    SearchQueryRepo,
)
from tripwire.db.sqlite import SQLiteDB
from tripwire.events.broadcaster import EventBroadcaster
from tripwire.ingestion.indexer import VectorizationIndexer
from tripwire.ingestion.orchestrator import IngestionOrchestrator
from tripwire.ingestion.progress import ProgressAggregator
from tripwire.jobs.client import JobServiceError
from tripwire.matching.scoring import normalize_name
from tripwire.search.hybrid import HybridScorer
from tripwire.vector.client import EmbeddingError, VectorEntry, VectorIndexError, VectorMatch

DIMENSIONS = 256


class FakeEmbedder:
    """Bag-of-words embeddings: identical texts map to identical vectors."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("Embedding API HTTP 500: boom")
        return [self._vector(text) for text in texts]

    @staticmethod
    def _vector(text: str) -> list[float]:
        values = [0.0] * DIMENSIONS
        for token in normalize_name(text).split():
            values[zlib.crc32(token.encode("utf-8")) % DIMENSIONS] += 1.0
        return values

    async def close(self) -> None:
        pass


class FakeVectorIndex:
    """In-memory cosine index supporting ``{"field": {"$in": [...]}}`` filters."""

    def __init__(self) -> None:
        self.vectors: dict[str, VectorEntry] = {}
        self.fail_upsert = False
        self.fail_delete = False
        self.queries: list[dict[str, Any]] = []

    async def upsert(self, vectors: list[VectorEntry]) -> int:
        if self.fail_upsert:
            raise VectorIndexError("Vector index HTTP 503: unavailable")
        for vector in vectors:
            self.vectors[vector.id] = vector
        return len(vectors)

    async def delete_by_ids(self, ids: list[str]) -> int:
        if self.fail_delete:
            raise VectorIndexError("Vector index HTTP 503: unavailable")
        for vid in ids:
            self.vectors.pop(vid, None)
        return len(ids)

    async def query(
        self,
        vector: list[float],
        top_k: int = 20,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        self.queries.append({"top_k": top_k, "filter": filter})
        hits = []
        for entry in self.vectors.values():
            if not self._matches_filter(entry.metadata, filter):
                continue
            hits.append(VectorMatch(id=entry.id, score=_cosine(vector, entry.values), metadata=entry.metadata))
        hits.sort(key=lambda h: -h.score)
        return hits[:top_k]

    @staticmethod
    def _matches_filter(metadata: dict[str, Any], filter: dict[str, Any] | None) -> bool:
        for field, condition in (filter or {}).items():
            if isinstance(condition, dict) and "$in" in condition:
                if metadata.get(field) not in condition["$in"]:
                    return False
            elif metadata.get(field) != condition:
                return False
        return True

    async def close(self) -> None:
        pass


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


@pytest.fixture
def db(tmp_path):
    """Create a SQLite DB in a temp directory."""
    database = SQLiteDB(str(tmp_path / "test.db"))
    yield database
    database.close()


@pytest.fixture
def record_repo(db):
    return RecordRepo(db)


@pytest.fixture
def identifier_repo(db):
    return IdentifierRepo(db)


@pytest.fixture
def run_repo(db):
    return IngestionRunRepo(db)


@pytest.fixture
def search_repo(db):
    return SearchQueryRepo(db)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


def make_record(record_id: str, name: str, **overrides: Any) -> dict[str, Any]:
    """A batch-callback record dict with sensible defaults."""
    record: dict[str, Any] = {
        "id": record_id,
        "party_type": "Individual",
        "primary_name": name,
        "aliases": [],
        "identifiers": [],
    }
    record.update(overrides)
    return record


@pytest.fixture
def record_factory():
    return make_record


class FakeJobs:
    """Records created threads instead of calling the job service."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.threads: list[dict[str, Any]] = []

    async def create_thread(self, task_type, job_params, metadata=None):
        if self.fail:
            raise JobServiceError("Job service HTTP 500: down")
        self.threads.append({"task_type": task_type, "job_params": job_params, "metadata": metadata})
        return f"thread-{len(self.threads)}"

    async def get_thread(self, thread_id):
        raise JobServiceError("status not available")

    async def close(self) -> None:
        pass


@pytest.fixture
def jobs():
    return FakeJobs()


@pytest.fixture
def api_app(db, tmp_path, record_repo, identifier_repo, run_repo, search_repo, embedder, vector_index, jobs):
    """A FastAPI app with every router and in-memory external services."""
    from fastapi import FastAPI

    from tripwire.api.events import router as events_router
    from tripwire.api.internal import router as internal_router
    from tripwire.api.routes import router as api_router

    app = FastAPI()
    app.include_router(api_router)
    app.include_router(internal_router)
    app.include_router(events_router)

    settings = Settings(UPLOAD_DIR=str(tmp_path / "uploads"), CALLBACK_BASE_URL="http://tripwire.test")
    kv = SQLiteKV(db)
    runs_cache = QueryCache(kv, "runs")
    records_cache = QueryCache(kv, "records")

    app.state.settings = settings
    app.state.db = db
    app.state.record_repo = record_repo
    app.state.identifier_repo = identifier_repo
    app.state.run_repo = run_repo
    app.state.search_repo = search_repo
    app.state.runs_cache = runs_cache
    app.state.records_cache = records_cache
    app.state.embedder = embedder
    app.state.vector_index = vector_index
    app.state.jobs = jobs
    app.state.broadcaster = EventBroadcaster()
    app.state.orchestrator = IngestionOrchestrator(
        db, record_repo, identifier_repo, run_repo,
        upload_dir=tmp_path / "uploads",
        jobs=jobs,
        callback_base_url=settings.CALLBACK_BASE_URL,
        runs_cache=runs_cache,
        records_cache=records_cache,
    )
    app.state.indexer = VectorizationIndexer(record_repo, run_repo, embedder, vector_index)
    app.state.progress = ProgressAggregator(run_repo, jobs)
    app.state.scorer = HybridScorer(record_repo, identifier_repo, embedder, vector_index)
    return app


@pytest.fixture
def client(api_app):
    return TestClient(api_app)
