"""Clients for the external embedding API and vector index.

Both services are delegated: Tripwire never computes embeddings or runs
nearest-neighbor search itself. Vectors are stored under the id
``{dataset}:{record_id}`` with a flat metadata bag used for filtering.

Wire format (JSON over HTTP):
    POST {EMBEDDING_URL}/embeddings      {"model", "texts"}         -> {"data": [[float]]}
    POST {VECTOR_INDEX_URL}/vectors/upsert        {"vectors": [...]} -> {"count"}
    POST {VECTOR_INDEX_URL}/vectors/delete_by_ids {"ids": [...]}     -> {"count"}
    POST {VECTOR_INDEX_URL}/vectors/query         {"vector", "topK", "returnMetadata", "filter"}
                                                                     -> {"matches": [...]}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tripwire.http_client import JsonApiClient


@dataclass(frozen=True)
class VectorEntry:
    """One vector to upsert."""

    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"id": self.id, "values": self.values, "metadata": self.metadata}


@dataclass(frozen=True)
class VectorMatch:
    """A nearest-neighbor hit returned by the vector index."""

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class EmbeddingError(Exception):
    """Raised when an embedding API call fails."""


class VectorIndexError(Exception):
    """Raised when a vector index call fails."""


class EmbeddingClient(JsonApiClient):
    """Async client for the text embedding API.

    Parameters
    ----------
    base_url : str
        Base URL of the embedding service.
    model : str
        Embedding model name sent with every request.
    api_key : str | None
        Optional bearer token.
    timeout : float
        Request timeout in seconds (default: 30.0).
    """

    error_class = EmbeddingError
    service_name = "Embedding API"

    def __init__(
        self,
        base_url: str,
        model: str = "bge-base-en-v1.5",
        api_key: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(base_url, api_key=api_key, timeout=timeout)
        self.model = model

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts, one vector per input, in input order.

        Raises
        ------
        EmbeddingError
            On API failure or when the response does not hold one vector per text.
        """
        if not texts:
            return []
        parsed = await self._request("POST", "/embeddings", {"model": self.model, "texts": texts})

        data = parsed.get("data")
        if not isinstance(data, list) or not all(isinstance(v, list) for v in data):
            raise EmbeddingError("Invalid embedding response format")
        if len(data) != len(texts):
            raise EmbeddingError(
                f"Embedding API returned {len(data)} vectors for {len(texts)} texts"
            )
        return [[float(x) for x in vector] for vector in data]


class VectorIndexClient(JsonApiClient):
    """Async client for the external nearest-neighbor index."""

    error_class = VectorIndexError
    service_name = "Vector index"

    async def upsert(self, vectors: list[VectorEntry]) -> int:
        """Insert or replace vectors by id. Returns the number sent."""
        if not vectors:
            return 0
        await self._request(
            "POST", "/vectors/upsert", {"vectors": [v.to_wire() for v in vectors]}
        )
        return len(vectors)

    async def delete_by_ids(self, ids: list[str]) -> int:
        """Delete vectors by id. Unknown ids are ignored by the service."""
        if not ids:
            return 0
        await self._request("POST", "/vectors/delete_by_ids", {"ids": ids})
        return len(ids)

    async def query(
        self,
        vector: list[float],
        top_k: int = 20,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        """Return the *top_k* nearest vectors, best first, with metadata."""
        payload: dict[str, Any] = {
            "vector": vector,
            "topK": top_k,
            "returnMetadata": "all",
        }
        if filter:
            payload["filter"] = filter
        parsed = await self._request("POST", "/vectors/query", payload)

        raw_matches = parsed.get("matches", [])
        if not isinstance(raw_matches, list):
            raw_matches = []

        matches: list[VectorMatch] = []
        for row in raw_matches:
            if not isinstance(row, dict) or not row.get("id"):
                continue
            metadata = row.get("metadata")
            matches.append(
                VectorMatch(
                    id=str(row["id"]),
                    score=float(row.get("score", 0.0)),
                    metadata=metadata if isinstance(metadata, dict) else {},
                )
            )
        return matches
