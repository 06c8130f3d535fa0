"""Public REST API routes.

Routes receive their collaborators (repos, services, caches) via
app.state, set up by the application lifespan.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tripwire.config import ConfigurationError
from tripwire.datasets import UnknownDatasetError, get_dataset
from tripwire.db.models import IngestionRun
from tripwire.db.repositories import RunNotFoundError
from tripwire.ingestion.orchestrator import InvalidStateError
from tripwire.jobs.client import TASK_PEP_SEARCH, JobServiceError
from tripwire.search.hybrid import DEFAULT_THRESHOLD, DEFAULT_TOP_K
from tripwire.vector.client import EmbeddingError, VectorIndexError

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_FILE_SIZE = 200 * 1024 * 1024  # 200 MB
MAX_PAGE_SIZE = 200


# -- Request/Response models --------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchRequest(_CamelModel):
    q: str
    birth_date: str | None = None
    identifiers: list[str] | None = None
    countries: list[str] | None = None
    datasets: list[str] | None = None
    entity_type: str = "person"
    top_k: int = Field(default=DEFAULT_TOP_K, ge=1, le=100)
    threshold: float = Field(default=DEFAULT_THRESHOLD, ge=0.0, le=1.0)

    @field_validator("q")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Query must be non-empty")
        return value


class StartIngestionRequest(_CamelModel):
    dataset: str
    source_type: str
    file_name: str | None = None
    batch_size: int | None = Field(default=None, ge=1, le=5000)


class VectorizeRequest(BaseModel):
    dataset: str


# -- Helpers --------------------------------------------------------------------

def _get_state(request: Request) -> Any:
    """Get app state (repos, services, caches)."""
    return request.app.state


def _require_dataset(dataset: str) -> None:
    try:
        get_dataset(dataset)
    except UnknownDatasetError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# -- Search -----------------------------------------------------------------------

@router.post("/search")
async def search(body: SearchRequest, request: Request) -> dict[str, Any]:
    """Hybrid search across the watchlists.

    Creates a search query whose id doubles as the channel for live
    events (``/events/{searchId}``), then queues the asynchronous PEP
    search for persons when a job service is configured.
    """
    state = _get_state(request)
    if body.datasets:
        for dataset in body.datasets:
            _require_dataset(dataset)

    search_query = state.search_repo.create(
        query=body.q,
        birth_date=body.birth_date,
        identifiers=body.identifiers,
    )
    search_id = search_query["id"]

    try:
        matches = await state.scorer.search(
            body.q,
            birth_date=body.birth_date,
            identifiers=body.identifiers,
            top_k=body.top_k,
            threshold=body.threshold,
            countries=body.countries,
            datasets=body.datasets,
        )
    except ConfigurationError as exc:
        state.search_repo.mark_failed(search_id)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except (EmbeddingError, VectorIndexError) as exc:
        logger.error("Search %s failed: %s", search_id, exc)
        state.search_repo.mark_failed(search_id)
        raise HTTPException(status_code=502, detail="Search backend unavailable") from exc

    results = [m.to_api() for m in matches]
    state.search_repo.store_matches(search_id, results)

    pep_status = "skipped"
    if state.jobs is not None and body.entity_type == "person":
        try:
            await state.jobs.create_thread(
                TASK_PEP_SEARCH,
                {
                    "search_id": search_id,
                    "query": body.q,
                    "birth_date": body.birth_date,
                    "callback_url": state.settings.CALLBACK_BASE_URL,
                },
                {"source": "search"},
            )
            pep_status = "pending"
        except JobServiceError as exc:
            logger.error("Failed to queue PEP search for %s: %s", search_id, exc)
            pep_status = "failed"
        state.search_repo.set_pep_status(search_id, pep_status)

    return {
        "queryId": search_id,
        "matches": results,
        "count": len(results),
        "pepSearch": {"searchId": search_id, "status": pep_status},
    }


@router.get("/search/{search_id}")
async def get_search(search_id: str, request: Request) -> dict[str, Any]:
    """Stored search query with its matches and PEP verdict."""
    state = _get_state(request)
    row = state.search_repo.get(search_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Search not found")
    return {
        "id": row["id"],
        "query": row["query"],
        "status": row["status"],
        "matchCount": row["match_count"],
        "matches": json.loads(row["result"]) if row["result"] else [],
        "pepStatus": row["pep_status"],
        "pepResult": json.loads(row["pep_result"]) if row["pep_result"] else None,
        "createdAt": row["created_at"],
    }


# -- Ingestion upload flow --------------------------------------------------------

@router.post("/ingestion/start")
async def start_ingestion(body: StartIngestionRequest, request: Request) -> dict[str, Any]:
    """Create a pending run and return where to upload its source file."""
    state = _get_state(request)
    _require_dataset(body.dataset)
    try:
        run = state.orchestrator.start_run(
            body.dataset, body.source_type, file_name=body.file_name, batch_size=body.batch_size
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "runId": run["id"],
        "status": run["status"],
        "uploadUrl": f"/ingestion/{run['id']}/upload",
    }


@router.put("/ingestion/{run_id}/upload")
async def upload_source(
    run_id: int,
    request: Request,
    file: UploadFile = File(...),
) -> dict[str, Any]:
    """Store the source file of a pending run."""
    state = _get_state(request)
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(content) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File exceeds maximum size of {MAX_FILE_SIZE // (1024 * 1024)} MB",
        )
    try:
        state.orchestrator.save_upload(run_id, content)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Ingestion run not found") from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"runId": run_id, "status": "uploaded", "sizeBytes": len(content)}


@router.post("/ingestion/{run_id}/complete")
async def complete_upload(run_id: int, request: Request) -> dict[str, Any]:
    """Confirm the upload and queue processing of the run."""
    state = _get_state(request)
    try:
        run = await state.orchestrator.complete_upload(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Ingestion run not found") from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except JobServiceError as exc:
        raise HTTPException(status_code=502, detail="Failed to queue ingestion job") from exc
    return IngestionRun.from_row(run).to_api()


# -- Ingestion runs -----------------------------------------------------------------

@router.get("/ingestion/runs")
async def list_runs(
    request: Request,
    status: str | None = None,
    dataset: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict[str, Any]:
    """List ingestion runs, newest first."""
    state = _get_state(request)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)

    def load() -> dict[str, Any]:
        rows = state.run_repo.list_runs(status=status, dataset=dataset, limit=limit, offset=offset)
        return {"success": True, "result": [IngestionRun.from_row(r).to_api() for r in rows]}

    return state.runs_cache.read_list(str(request.url), load)


@router.get("/ingestion/runs/{run_id}")
async def get_run(run_id: int, request: Request) -> dict[str, Any]:
    state = _get_state(request)

    def load() -> dict[str, Any]:
        row = state.run_repo.get(run_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Ingestion run not found")
        return {"success": True, "result": IngestionRun.from_row(row).to_api()}

    return state.runs_cache.read_item(run_id, load)


@router.get("/ingestion/runs/{run_id}/progress")
async def get_run_progress(run_id: int, request: Request) -> dict[str, Any]:
    """Combined ingestion and vectorization progress of a run."""
    state = _get_state(request)
    try:
        progress = await state.progress.get_progress(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Ingestion run not found") from exc
    return progress.to_api()


# -- Watchlist records --------------------------------------------------------------

@router.get("/watchlist/{dataset}/records")
async def list_records(
    dataset: str,
    request: Request,
    q: str | None = None,
    party_type: str | None = Query(default=None, alias="partyType"),
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """List stored records of a dataset, ordered by id."""
    state = _get_state(request)
    _require_dataset(dataset)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)

    def load() -> dict[str, Any]:
        records, total = state.record_repo.query(
            dataset, name_prefix=q, party_type=party_type, limit=limit, offset=offset
        )
        return {
            "success": True,
            "result": [r.to_api() for r in records],
            "total": total,
        }

    return state.records_cache.read_list(str(request.url), load)


@router.get("/watchlist/{dataset}/records/{record_id}")
async def get_record(dataset: str, record_id: str, request: Request) -> dict[str, Any]:
    state = _get_state(request)
    _require_dataset(dataset)

    def load() -> dict[str, Any]:
        record = state.record_repo.get(dataset, record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return {"success": True, "result": record.to_api()}

    return state.records_cache.read_item(f"{dataset}:{record_id}", load)


# -- Admin --------------------------------------------------------------------------

@router.post("/admin/vectorize")
async def admin_vectorize(body: VectorizeRequest, request: Request) -> dict[str, Any]:
    """Queue a full reindex of a dataset on the job service."""
    state = _get_state(request)
    _require_dataset(body.dataset)
    try:
        thread_id = await state.orchestrator.queue_vectorization(
            body.dataset, triggered_by="admin", metadata={"source": "admin"}
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except JobServiceError as exc:
        raise HTTPException(status_code=502, detail="Failed to queue vectorization job") from exc
    return {"success": True, "dataset": body.dataset, "threadId": thread_id}
