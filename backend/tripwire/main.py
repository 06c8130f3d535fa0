"""FastAPI application for Tripwire.

Wires together the persistence layer, external service clients, the
ingestion pipeline, hybrid search, caches and live events.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

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
from tripwire.jobs.client import JobServiceClient
from tripwire.matching.scoring import ScoreWeights
from tripwire.search.hybrid import HybridScorer
from tripwire.vector.client import EmbeddingClient, VectorIndexClient

logger = logging.getLogger(__name__)

settings = Settings()


def _secure_directory(path: Path, mode: int = 0o700) -> None:
    """Create a directory readable only by the service user."""
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, mode)


def build_state(app: FastAPI, settings: Settings, db: SQLiteDB) -> None:
    """Create repositories, clients and services and store them on app.state.

    External clients are only created for configured URLs; services
    receive None otherwise and report a configuration error when used.
    """
    timeout = settings.HTTP_TIMEOUT_SECONDS
    embedder = (
        EmbeddingClient(
            settings.EMBEDDING_URL,
            model=settings.EMBEDDING_MODEL,
            api_key=settings.EMBEDDING_API_KEY,
            timeout=timeout,
        )
        if settings.EMBEDDING_URL else None
    )
    vector_index = (
        VectorIndexClient(settings.VECTOR_INDEX_URL, api_key=settings.VECTOR_INDEX_API_KEY, timeout=timeout)
        if settings.VECTOR_INDEX_URL else None
    )
    jobs = JobServiceClient(settings.JOB_SERVICE_URL, timeout=timeout) if settings.JOB_SERVICE_URL else None

    record_repo = RecordRepo(db, max_params=settings.STORE_MAX_PARAMS)
    identifier_repo = IdentifierRepo(db, max_params=settings.STORE_MAX_PARAMS)
    run_repo = IngestionRunRepo(db)
    search_repo = SearchQueryRepo(db)

    kv = SQLiteKV(db)
    runs_cache = QueryCache(kv, "runs", settings.cache_ttl_seconds)
    records_cache = QueryCache(kv, "records", settings.cache_ttl_seconds)

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
        db,
        record_repo,
        identifier_repo,
        run_repo,
        upload_dir=Path(settings.UPLOAD_DIR),
        jobs=jobs,
        callback_base_url=settings.CALLBACK_BASE_URL,
        runs_cache=runs_cache,
        records_cache=records_cache,
    )
    app.state.indexer = VectorizationIndexer(
        record_repo,
        run_repo,
        embedder,
        vector_index,
        embedding_batch_size=settings.EMBEDDING_BATCH_SIZE,
        upsert_batch_size=settings.VECTOR_UPSERT_BATCH_SIZE,
        delete_batch_size=settings.VECTOR_DELETE_BATCH_SIZE,
    )
    app.state.progress = ProgressAggregator(run_repo, jobs)
    app.state.scorer = HybridScorer(
        record_repo,
        identifier_repo,
        embedder,
        vector_index,
        weights=ScoreWeights(
            vector=settings.SCORE_WEIGHT_VECTOR,
            name=settings.SCORE_WEIGHT_NAME,
            meta=settings.SCORE_WEIGHT_META,
        ),
    )


async def close_clients(app: FastAPI) -> None:
    for name in ("embedder", "vector_index", "jobs"):
        client = getattr(app.state, name, None)
        if client is not None:
            await client.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler.

    Initializes the database and services on startup, closes HTTP
    clients and the database on shutdown.
    """
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Uploaded source files and the database hold personal data
    data_dir = Path(settings.DATABASE_DIR)
    upload_dir = Path(settings.UPLOAD_DIR)
    _secure_directory(data_dir)
    _secure_directory(upload_dir)

    db_path = data_dir / "tripwire.db"
    db = SQLiteDB(str(db_path))
    os.chmod(db_path, 0o600)

    build_state(app, settings, db)
    logger.info(
        "Tripwire started (embedding=%s, vector_index=%s, jobs=%s)",
        bool(settings.EMBEDDING_URL), bool(settings.VECTOR_INDEX_URL), bool(settings.JOB_SERVICE_URL),
    )

    yield

    await close_clients(app)
    db.close()


app = FastAPI(
    title="Tripwire",
    description="Hybrid sanctions and PEP watchlist screening",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware using Settings.FRONTEND_URL
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from tripwire.api.events import router as events_router  # noqa: E402
from tripwire.api.internal import router as internal_router  # noqa: E402
from tripwire.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)
app.include_router(internal_router)
app.include_router(events_router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
