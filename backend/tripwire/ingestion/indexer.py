"""Vectorization of stored watchlist records.

Driven page by page by the external vectorization job through the
``/internal/vectorize`` callbacks. Each page is embedded in sub-batches
sized to the embedding API's per-call limit and upserted in sub-batches
sized to the vector index's per-call limit. A failing sub-batch is
recorded and skipped; the caller decides whether to retry its offset.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from tripwire.config import ConfigurationError
from tripwire.datasets import get_dataset, vector_id
from tripwire.db.repositories import IngestionRunRepo, RecordRepo
from tripwire.vector.client import (
    EmbeddingClient,
    EmbeddingError,
    VectorEntry,
    VectorIndexClient,
    VectorIndexError,
)

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 100


@dataclass
class IndexResult:
    indexed_count: int = 0
    errors: list[str] = field(default_factory=list)


class VectorizationIndexer:
    """Embeds records of a dataset and keeps the vector index in sync.

    Parameters
    ----------
    records : RecordRepo
        Record Store to read pages from.
    runs : IngestionRunRepo
        Where vectorization summaries are recorded.
    embedder : EmbeddingClient | None
        Embedding API client. None when not configured.
    vector_index : VectorIndexClient | None
        Vector index client. None when not configured.
    embedding_batch_size, upsert_batch_size, delete_batch_size : int
        Per-call limits of the external services.
    """

    def __init__(
        self,
        records: RecordRepo,
        runs: IngestionRunRepo,
        embedder: EmbeddingClient | None,
        vector_index: VectorIndexClient | None,
        embedding_batch_size: int = 50,
        upsert_batch_size: int = 100,
        delete_batch_size: int = 1000,
    ) -> None:
        self._records = records
        self._runs = runs
        self._embedder = embedder
        self._vector_index = vector_index
        self.embedding_batch_size = embedding_batch_size
        self.upsert_batch_size = upsert_batch_size
        self.delete_batch_size = delete_batch_size

    def _require_index(self) -> VectorIndexClient:
        if self._vector_index is None:
            raise ConfigurationError("Vector index is not configured")
        return self._vector_index

    def _require_embedder(self) -> EmbeddingClient:
        if self._embedder is None:
            raise ConfigurationError("Embedding API is not configured")
        return self._embedder

    def count(self, dataset: str) -> int:
        """Number of records in the Record Store for *dataset*."""
        get_dataset(dataset)
        count = self._records.count(dataset)
        logger.info("Dataset %s has %d records", dataset, count)
        return count

    async def delete_by_dataset(self, dataset: str) -> int:
        """Delete the vector of every stored record of *dataset*.

        Best effort: a failing delete batch is logged and the remaining
        batches still run. Returns the number of ids whose batch succeeded.
        """
        get_dataset(dataset)
        index = self._require_index()
        ids = [vector_id(dataset, record_id) for record_id in self._records.list_ids(dataset)]
        logger.info("Found %d vectors to delete for %s", len(ids), dataset)

        deleted = 0
        for i in range(0, len(ids), self.delete_batch_size):
            batch = ids[i:i + self.delete_batch_size]
            try:
                deleted += await index.delete_by_ids(batch)
            except VectorIndexError as exc:
                logger.error("Error deleting vector batch %d: %s", i // self.delete_batch_size + 1, exc)
        logger.info("Deleted %d vectors for %s", deleted, dataset)
        return deleted

    async def index_batch(
        self,
        dataset: str,
        offset: int,
        limit: int,
        batch_number: int | None = None,
        total_batches: int | None = None,
    ) -> IndexResult:
        """Embed and upsert one page of records ordered by record id."""
        spec = get_dataset(dataset)
        index = self._require_index()
        embedder = self._require_embedder()

        page = self._records.page(dataset, offset, limit)
        result = IndexResult()
        if not page:
            logger.info("No %s records found at offset %d", dataset, offset)
            return result

        logger.info(
            "Indexing %d %s records (batch %s/%s, offset %d)",
            len(page), dataset, batch_number or "?", total_batches or "?", offset,
        )

        for i in range(0, len(page), self.embedding_batch_size):
            chunk = page[i:i + self.embedding_batch_size]
            texts = [spec.compose_text(record) for record in chunk]
            try:
                embeddings = await embedder.embed(texts)
            except EmbeddingError as exc:
                message = f"Failed to generate embeddings: {exc}"
                logger.error(message)
                result.errors.append(message)
                continue

            vectors = [
                VectorEntry(
                    id=vector_id(dataset, record.id),
                    values=values,
                    metadata=spec.compose_metadata(record),
                )
                for record, values in zip(chunk, embeddings)
            ]
            for j in range(0, len(vectors), self.upsert_batch_size):
                upsert_batch = vectors[j:j + self.upsert_batch_size]
                try:
                    result.indexed_count += await index.upsert(upsert_batch)
                except VectorIndexError as exc:
                    message = f"Failed to upsert vectors: {exc}"
                    logger.error(message)
                    result.errors.append(message)

        logger.info(
            "Indexed %d %s records, %d errors", result.indexed_count, dataset, len(result.errors)
        )
        return result

    def complete(
        self,
        dataset: str,
        total_indexed: int,
        total_batches: int,
        errors: Sequence[str] | None = None,
    ) -> dict[str, Any] | None:
        """Record a finished vectorization on the latest run that queued one.

        Returns the updated run, or None when no such run exists.
        """
        get_dataset(dataset)
        error_list = list(errors or [])
        logger.info(
            "Vectorization of %s complete: indexed=%d, batches=%d, errors=%d",
            dataset, total_indexed, total_batches, len(error_list),
        )
        run = self._runs.latest_with_vectorize_job(dataset)
        if run is None:
            logger.info("No run with a vectorization job found for %s", dataset)
            return None

        try:
            stats = json.loads(run["stats"]) if run.get("stats") else {}
        except json.JSONDecodeError:
            stats = {}
        stats["vectorization"] = {
            "totalIndexed": total_indexed,
            "totalBatches": total_batches,
            "errors": error_list[:MAX_STORED_ERRORS],
        }
        self._runs.update(run["id"], stats=stats)
        return self._runs.get(run["id"])
