"""Tests for the four-stage hybrid search."""

from __future__ import annotations

import pytest

from tripwire.config import ConfigurationError
from tripwire.db.models import WatchlistRecord, WatchlistRecordIn
from tripwire.ingestion.indexer import VectorizationIndexer
from tripwire.matching.scoring import ScoreWeights
from tripwire.search.hybrid import HybridScorer, Match, sort_matches


@pytest.fixture
def scorer(record_repo, identifier_repo, embedder, vector_index):
    return HybridScorer(record_repo, identifier_repo, embedder, vector_index)


@pytest.fixture
def load(record_repo, identifier_repo, run_repo, embedder, vector_index):
    """Store records of one dataset and index their vectors."""
    indexer = VectorizationIndexer(record_repo, run_repo, embedder, vector_index)

    async def _load(dataset: str, records: list[dict]) -> None:
        models = [WatchlistRecordIn.model_validate({"source_list": "X", **r}) for r in records]
        for model in models:
            record_repo.upsert(dataset, model)
        identifier_repo.replace_for_records(dataset, models)
        await indexer.index_batch(dataset, offset=0, limit=1000)

    return _load


@pytest.fixture
async def watchlist(load):
    await load("ofac_sdn", [
        {"id": "r1", "primary_name": "Juan Perez"},
        {"id": "r2", "primary_name": "Maria Gonzalez Fernandez", "birth_date": "1970-05-01",
         "extra": {"nationalities": ["Mexico"]}},
        {"id": "r3", "primary_name": "Viktor Bout",
         "identifiers": [{"type": "Passport", "number": "P-123", "country": "Russia"}]},
    ])


async def test_best_match_ranks_first(scorer, watchlist):
    matches = await scorer.search("Maria Gonzalez Fernandez")

    assert [m.record.id for m in matches] == ["r2"]
    best = matches[0]
    assert best.vector_score == pytest.approx(1.0)
    assert best.name_score == pytest.approx(1.0)
    assert best.meta_score == 0.0
    assert best.score == pytest.approx(0.9)
    assert best.identifier_match is False


async def test_meta_score_adds_credit(scorer, watchlist):
    [match] = await scorer.search(
        "Maria Gonzalez Fernandez", birth_date="1970-05-01", countries=["mexico"]
    )
    assert match.meta_score == 1.0
    assert match.score == pytest.approx(1.0)


async def test_identifier_match_exempt_from_threshold(scorer, watchlist):
    matches = await scorer.search("Completely Different", identifiers=["p 123"], threshold=0.99)

    assert [m.record.id for m in matches] == ["r3"]
    assert matches[0].identifier_match is True
    assert matches[0].score < 0.99


async def test_identifier_and_vector_hits_merge(scorer, watchlist):
    matches = await scorer.search("Viktor Bout", identifiers=["P123"], threshold=0.0)

    r3 = [m for m in matches if m.record.id == "r3"]
    assert len(r3) == 1
    assert r3[0].identifier_match is True
    assert r3[0].vector_score > 0.5
    assert matches[0].record.id == "r3"


async def test_threshold_filters_weak_matches(scorer, watchlist):
    everything = await scorer.search("Juan Perez", threshold=0.0)
    assert {m.record.id for m in everything} == {"r1", "r2", "r3"}
    strict = await scorer.search("Juan Perez", threshold=0.85)
    assert [m.record.id for m in strict] == ["r1"]


async def test_dataset_filter(scorer, watchlist, load, vector_index):
    await load("unsc", [
        {"id": "QDi.1", "primary_name": "Maria Gonzalez Fernandez",
         "identifiers": [{"type": "Passport", "number": "P-123"}]},
    ])

    matches = await scorer.search("Maria Gonzalez Fernandez", identifiers=["P123"], datasets=["unsc"])

    assert [(m.dataset, m.record.id) for m in matches] == [("unsc", "QDi.1")]
    assert vector_index.queries[-1]["filter"] == {"dataset": {"$in": ["unsc"]}}


async def test_no_filter_when_searching_everything(scorer, watchlist, vector_index):
    await scorer.search("Juan Perez")
    assert vector_index.queries[-1]["filter"] is None


async def test_same_record_id_in_two_datasets(scorer, watchlist, load):
    await load("unsc", [{"id": "r2", "primary_name": "Maria Gonzalez Fernandez"}])
    matches = await scorer.search("Maria Gonzalez Fernandez")
    assert sorted(m.dataset for m in matches) == ["ofac_sdn", "unsc"]


async def test_vectors_without_records_are_dropped(scorer, watchlist, record_repo):
    record_repo.truncate("ofac_sdn")
    assert await scorer.search("Maria Gonzalez Fernandez", threshold=0.0) == []


async def test_deleted_vectors_no_longer_match(scorer, watchlist, record_repo, run_repo, embedder, vector_index):
    indexer = VectorizationIndexer(record_repo, run_repo, embedder, vector_index)
    await indexer.delete_by_dataset("ofac_sdn")

    assert await scorer.search("Maria Gonzalez Fernandez", threshold=0.0) == []
    # identifier lookups do not depend on the vector index
    assert [m.record.id for m in await scorer.search("Nobody", identifiers=["P123"])] == ["r3"]


async def test_top_k_passed_to_index(scorer, watchlist, vector_index):
    await scorer.search("Juan Perez", top_k=2, threshold=0.0)
    assert vector_index.queries[-1]["top_k"] == 2


async def test_custom_weights(record_repo, identifier_repo, embedder, vector_index, watchlist):
    scorer = HybridScorer(
        record_repo, identifier_repo, embedder, vector_index,
        weights=ScoreWeights(vector=0.0, name=1.0, meta=0.0),
    )
    [match] = await scorer.search("Maria Gonzalez Fernandez")
    assert match.score == pytest.approx(1.0)


async def test_unconfigured_clients(record_repo, identifier_repo):
    scorer = HybridScorer(record_repo, identifier_repo, None, None)
    with pytest.raises(ConfigurationError):
        await scorer.search("Juan Perez")


# -- Ordering and response shape ------------------------------------------------------

def _match(dataset: str, record_id: str, score: float, identifier_match: bool = False) -> Match:
    record = WatchlistRecord(
        dataset=dataset, id=record_id, party_type="Individual", primary_name="X",
        source_list="SDN", created_at="t", updated_at="t",
    )
    return Match(record, score, 0.0, 0.0, 0.0, identifier_match)


def test_sort_matches_tie_breaks():
    ordered = sort_matches([
        _match("unsc", "b", 0.8),
        _match("ofac_sdn", "z", 0.8),
        _match("unsc", "a", 0.8, identifier_match=True),
        _match("ofac_sdn", "a", 0.9),
        _match("ofac_sdn", "c", 0.8),
    ])
    assert [(m.dataset, m.record.id) for m in ordered] == [
        ("ofac_sdn", "a"),
        ("unsc", "a"),
        ("ofac_sdn", "c"),
        ("ofac_sdn", "z"),
        ("unsc", "b"),
    ]


def test_match_to_api_shape():
    payload = _match("ofac_sdn", "1", 0.8123456789, identifier_match=True).to_api()
    assert payload["dataset"] == "ofac_sdn"
    assert payload["target"]["primaryName"] == "X"
    assert payload["score"] == 0.812346
    assert payload["confidence"] == "probable"
    assert payload["breakdown"] == {
        "vectorScore": 0.0,
        "nameScore": 0.0,
        "metaScore": 0.0,
        "identifierMatch": True,
    }
