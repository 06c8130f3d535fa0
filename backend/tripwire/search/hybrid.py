"""Hybrid watchlist search.

Four stages build and score a candidate map keyed by (dataset, record id):

1. Identifier stage: exact lookup of normalized identifiers in the
   identifier index. Candidates are seeded with vector score 0 and
   ``identifier_match=True``.
2. Vector stage: embed the query, take the top-k nearest vectors. Hits
   already seeded keep their identifier flag and only take the vector
   score; new hits are seeded with ``identifier_match=False``.
3. Hydration stage: batch-fetch the full records of every seeded
   candidate. Candidates whose record no longer exists are dropped.
4. Scoring stage: name, metadata and hybrid score per candidate, filter,
   sort.

An identifier match is reported in the breakdown but does not change the
numeric score. Identifier matches are always returned, whatever their
score: an exact passport or tax id hit is never hidden behind a fuzzy
threshold.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from tripwire.config import ConfigurationError
from tripwire.datasets import DATASETS, parse_vector_id
from tripwire.db.models import WatchlistRecord
from tripwire.db.repositories import IdentifierRepo, RecordRepo
from tripwire.matching.scoring import (
    ScoreWeights,
    best_name_score,
    compute_hybrid_score,
    compute_meta_score,
    normalize_identifier,
    score_to_confidence,
)
from tripwire.vector.client import EmbeddingClient, VectorIndexClient

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 20
DEFAULT_THRESHOLD = 0.7

CandidateKey = tuple[str, str]


@dataclass
class Candidate:
    """A possible match. Seeded by a stage, hydrated once its record is loaded."""

    dataset: str
    record_id: str
    vector_score: float = 0.0
    identifier_match: bool = False
    record: WatchlistRecord | None = None

    @property
    def key(self) -> CandidateKey:
        return (self.dataset, self.record_id)

    @property
    def hydrated(self) -> bool:
        return self.record is not None


@dataclass(frozen=True)
class Match:
    """A scored, hydrated candidate."""

    record: WatchlistRecord
    score: float
    vector_score: float
    name_score: float
    meta_score: float
    identifier_match: bool

    @property
    def dataset(self) -> str:
        return self.record.dataset

    def to_api(self) -> dict[str, Any]:
        return {
            "dataset": self.record.dataset,
            "target": self.record.to_api(),
            "score": round(self.score, 6),
            "confidence": score_to_confidence(self.score),
            "breakdown": {
                "vectorScore": round(self.vector_score, 6),
                "nameScore": round(self.name_score, 6),
                "metaScore": round(self.meta_score, 6),
                "identifierMatch": self.identifier_match,
            },
        }


def record_countries(record: WatchlistRecord) -> list[str]:
    """Countries attached to a record: nationalities and identifier countries."""
    countries = [c for c in record.extra.get("nationalities") or [] if isinstance(c, str)]
    countries.extend(i.country for i in record.identifiers if i.country)
    return countries


def sort_matches(matches: Iterable[Match]) -> list[Match]:
    """Score descending, identifier matches first on ties, then dataset and record id."""
    return sorted(
        matches,
        key=lambda m: (-m.score, not m.identifier_match, m.record.dataset, m.record.id),
    )


class HybridScorer:
    """Runs hybrid searches across the configured datasets.

    Parameters
    ----------
    records : RecordRepo
        Record Store used for hydration.
    identifiers : IdentifierRepo
        Exact-match identifier index.
    embedder, vector_index : clients or None
        External services. None when not configured; searching then
        raises ConfigurationError.
    weights : ScoreWeights | None
        Hybrid score weights.
    """

    def __init__(
        self,
        records: RecordRepo,
        identifiers: IdentifierRepo,
        embedder: EmbeddingClient | None,
        vector_index: VectorIndexClient | None,
        weights: ScoreWeights | None = None,
    ) -> None:
        self._records = records
        self._identifiers = identifiers
        self._embedder = embedder
        self._vector_index = vector_index
        self.weights = weights or ScoreWeights()

    async def search(
        self,
        query: str,
        birth_date: str | None = None,
        identifiers: Sequence[str] | None = None,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = DEFAULT_THRESHOLD,
        countries: Sequence[str] | None = None,
        datasets: Sequence[str] | None = None,
    ) -> list[Match]:
        """Ranked matches for *query*, best first.

        Raises
        ------
        ConfigurationError
            If the embedding API or vector index is not configured.
        EmbeddingError, VectorIndexError
            If the query cannot be embedded or the index cannot be queried.
        """
        if self._embedder is None:
            raise ConfigurationError("Embedding API is not configured")
        if self._vector_index is None:
            raise ConfigurationError("Vector index is not configured")

        allowed = set(datasets) if datasets else set(DATASETS)
        candidates: dict[CandidateKey, Candidate] = {}

        self._identifier_stage(candidates, identifiers or [], allowed)
        await self._vector_stage(candidates, query, top_k, allowed)
        self._hydration_stage(candidates)
        matches = self._scoring_stage(candidates, query, birth_date, countries, threshold)

        logger.info(
            "Search completed: candidates=%d, matches=%d", len(candidates), len(matches)
        )
        return matches

    # -- Stages -------------------------------------------------------------------

    def _identifier_stage(
        self,
        candidates: dict[CandidateKey, Candidate],
        identifiers: Sequence[str],
        allowed: set[str],
    ) -> None:
        normalized = []
        for raw in identifiers:
            if not isinstance(raw, str):
                logger.info("Skipping non-string identifier %r", raw)
                continue
            value = normalize_identifier(raw)
            if value:
                normalized.append(value)
        if not normalized:
            return

        for dataset, record_id in self._identifiers.lookup(normalized):
            if dataset not in allowed:
                continue
            candidate = Candidate(dataset=dataset, record_id=record_id, identifier_match=True)
            candidates[candidate.key] = candidate
        logger.info("Identifier stage: %d candidates", len(candidates))

    async def _vector_stage(
        self,
        candidates: dict[CandidateKey, Candidate],
        query: str,
        top_k: int,
        allowed: set[str],
    ) -> None:
        assert self._embedder is not None and self._vector_index is not None
        [embedding] = await self._embedder.embed([query])

        vector_filter = None
        if allowed != set(DATASETS):
            vector_filter = {"dataset": {"$in": sorted(allowed)}}
        hits = await self._vector_index.query(embedding, top_k=top_k, filter=vector_filter)

        for hit in hits:
            record_id = hit.metadata.get("recordId")
            dataset = hit.metadata.get("dataset")
            if not record_id or not dataset:
                dataset, record_id = parse_vector_id(hit.id)
            if dataset not in allowed or not record_id:
                continue

            key = (str(dataset), str(record_id))
            existing = candidates.get(key)
            if existing is not None:
                existing.vector_score = hit.score
                continue
            candidates[key] = Candidate(
                dataset=key[0], record_id=key[1], vector_score=hit.score
            )
        logger.info("Vector stage: %d hits, %d candidates", len(hits), len(candidates))

    def _hydration_stage(self, candidates: dict[CandidateKey, Candidate]) -> None:
        pending: dict[str, list[str]] = defaultdict(list)
        for candidate in candidates.values():
            if not candidate.hydrated:
                pending[candidate.dataset].append(candidate.record_id)

        for dataset, record_ids in pending.items():
            for record in self._records.get_many(dataset, record_ids):
                candidates[(dataset, record.id)].record = record

        missing = [key for key, c in candidates.items() if not c.hydrated]
        for key in missing:
            logger.info("Dropping candidate %s:%s with no stored record", *key)
            del candidates[key]

    def _scoring_stage(
        self,
        candidates: dict[CandidateKey, Candidate],
        query: str,
        birth_date: str | None,
        countries: Sequence[str] | None,
        threshold: float,
    ) -> list[Match]:
        matches = []
        for candidate in candidates.values():
            record = candidate.record
            assert record is not None
            name_score = best_name_score(
                query, record.primary_name, record.aliases, record.party_type
            )
            meta_score = compute_meta_score(
                birth_date, countries, record.birth_date, record_countries(record)
            )
            score = compute_hybrid_score(
                candidate.vector_score, name_score, meta_score, self.weights
            )
            if score < threshold and not candidate.identifier_match:
                continue
            matches.append(Match(
                record=record,
                score=score,
                vector_score=candidate.vector_score,
                name_score=name_score,
                meta_score=meta_score,
                identifier_match=candidate.identifier_match,
            ))
        return sort_matches(matches)
