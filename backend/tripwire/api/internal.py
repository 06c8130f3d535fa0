"""Internal callback routes, consumed by the external job service.

The batch worker drives ingestion (truncate, batch xN, complete or
failed) and vectorization (count, delete-by-dataset, index-batch xN,
complete) through these endpoints. Callbacks that reference a run which
does not exist are acknowledged: a missing run is an expected outcome
here, not a client error.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from tripwire.config import ConfigurationError
from tripwire.datasets import UnknownDatasetError, get_dataset
from tripwire.ingestion.orchestrator import InvalidStateError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal")

PEP_STATUSES = {"completed", "failed"}


# -- Request models ---------------------------------------------------------------

class TruncateRequest(BaseModel):
    run_id: int


class BatchRequest(BaseModel):
    run_id: int
    batch_number: int = Field(ge=0)
    total_batches: int | None = Field(default=None, ge=0)
    records: list[dict[str, Any]] = Field(default_factory=list)


class CompleteRequest(BaseModel):
    run_id: int
    total_records: int = Field(ge=0)
    total_batches: int = Field(ge=0)
    errors: list[str] | None = None
    skip_vectorization: bool = False


class FailedRequest(BaseModel):
    run_id: int
    error: str


class DatasetRequest(BaseModel):
    dataset: str


class IndexBatchRequest(BaseModel):
    dataset: str
    offset: int = Field(ge=0)
    limit: int = Field(ge=1, le=5000)
    batch_number: int | None = None
    total_batches: int | None = None


class VectorizeCompleteRequest(BaseModel):
    dataset: str
    total_indexed: int = Field(ge=0)
    total_batches: int = Field(ge=0)
    errors: list[str] | None = None


class PepResultRequest(BaseModel):
    search_id: str
    status: str
    results: Any = None
    error: str | None = None


class BroadcastRequest(BaseModel):
    event: str | None = None
    payload: Any = None


# -- Helpers ------------------------------------------------------------------------

def _get_state(request: Request) -> Any:
    return request.app.state


def _require_dataset(dataset: str) -> None:
    try:
        get_dataset(dataset)
    except UnknownDatasetError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# -- Vectorization callbacks ----------------------------------------------------------
# Registered before the per-dataset routes so "vectorize" is never taken for a dataset.

@router.get("/vectorize/count")
async def vectorize_count(dataset: str, request: Request) -> dict[str, Any]:
    """Number of stored records of a dataset, used to plan index batches."""
    _require_dataset(dataset)
    count = _get_state(request).indexer.count(dataset)
    return {"success": True, "dataset": dataset, "count": count}


@router.post("/vectorize/delete-by-dataset")
async def vectorize_delete_by_dataset(body: DatasetRequest, request: Request) -> dict[str, Any]:
    _require_dataset(body.dataset)
    try:
        deleted = await _get_state(request).indexer.delete_by_dataset(body.dataset)
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"success": True, "dataset": body.dataset, "deleted_count": deleted}


@router.post("/vectorize/index-batch")
async def vectorize_index_batch(body: IndexBatchRequest, request: Request) -> dict[str, Any]:
    _require_dataset(body.dataset)
    try:
        result = await _get_state(request).indexer.index_batch(
            body.dataset,
            body.offset,
            body.limit,
            batch_number=body.batch_number,
            total_batches=body.total_batches,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {
        "success": not result.errors,
        "dataset": body.dataset,
        "indexed_count": result.indexed_count,
        "errors": result.errors,
    }


@router.post("/vectorize/complete")
async def vectorize_complete(body: VectorizeCompleteRequest, request: Request) -> dict[str, Any]:
    state = _get_state(request)
    _require_dataset(body.dataset)
    run = state.indexer.complete(
        body.dataset, body.total_indexed, body.total_batches, body.errors
    )
    if run is not None:
        state.runs_cache.invalidate()
    return {"success": True}


# -- PEP results and live events ----------------------------------------------------------

@router.post("/pep")
async def pep_result(body: PepResultRequest, request: Request) -> dict[str, Any]:
    """Persist an asynchronous PEP verdict, then push it to live subscribers.

    The verdict is stored first; a failed broadcast is logged and does
    not fail the callback.
    """
    state = _get_state(request)
    if body.status not in PEP_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status {body.status!r}. Allowed: {', '.join(sorted(PEP_STATUSES))}",
        )

    if body.status == "completed":
        stored = state.search_repo.set_pep_status(body.search_id, "completed", body.results)
        event, payload = "pep_results", {"searchId": body.search_id, "results": body.results}
    else:
        stored = state.search_repo.set_pep_status(
            body.search_id, "failed", {"error": body.error or "PEP search failed"}
        )
        event, payload = "pep_failed", {"searchId": body.search_id, "error": body.error}
    if not stored:
        logger.info("Search %s not found while storing PEP result (may not exist)", body.search_id)

    sent = 0
    try:
        sent = state.broadcaster.broadcast(body.search_id, event, payload).sent
    except Exception:
        logger.error("Failed to broadcast %s for search %s", event, body.search_id, exc_info=True)
    return {"success": True, "broadcast_sent": sent}


@router.post("/events/{search_id}/broadcast")
async def broadcast_event(search_id: str, body: BroadcastRequest, request: Request) -> dict[str, Any]:
    """Push an arbitrary event to the subscribers of a search."""
    result = _get_state(request).broadcaster.broadcast(search_id, body.event, body.payload)
    return {
        "success": True,
        "sent": result.sent,
        "failed": result.failed,
        "total_connections": result.total_connections,
    }


# -- Ingestion callbacks ----------------------------------------------------------------

@router.post("/{dataset}/truncate")
async def truncate(dataset: str, body: TruncateRequest, request: Request) -> dict[str, Any]:
    """Empty the dataset before a fresh load."""
    _require_dataset(dataset)
    try:
        deleted = _get_state(request).orchestrator.truncate(dataset, body.run_id)
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "deleted_count": deleted}


@router.post("/{dataset}/batch")
async def insert_batch(dataset: str, body: BatchRequest, request: Request) -> dict[str, Any]:
    _require_dataset(dataset)
    try:
        result = _get_state(request).orchestrator.insert_batch(
            dataset,
            body.run_id,
            body.batch_number,
            body.records,
            total_batches=body.total_batches,
        )
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": not result.errors, "inserted": result.inserted, "errors": result.errors}


@router.post("/{dataset}/complete")
async def complete(dataset: str, body: CompleteRequest, request: Request) -> dict[str, Any]:
    _require_dataset(dataset)
    try:
        result = await _get_state(request).orchestrator.complete(
            dataset,
            body.run_id,
            body.total_records,
            body.total_batches,
            errors=body.errors,
            skip_vectorization=body.skip_vectorization,
        )
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "vectorization_thread_id": result.vectorization_thread_id}


@router.post("/{dataset}/failed")
async def failed(dataset: str, body: FailedRequest, request: Request) -> dict[str, Any]:
    _require_dataset(dataset)
    try:
        _get_state(request).orchestrator.fail(dataset, body.run_id, body.error)
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True}
