"""Name, metadata and hybrid scoring for watchlist matching.

Compares a screening query against a watchlist record's primary name and
aliases, and blends the result with vector similarity and metadata
agreement into one score.

Name pipeline:
1. Normalize: strip diacritics, uppercase, punctuation to spaces, collapse whitespace
2. Name variants: nameparser.HumanName for "LAST, First" individuals,
   cleanco.basename() for entities (drops LLC, S.A. DE C.V., Ltd, ...)
3. Three strategies per variant, best one wins:
   - full-string Jaro-Winkler (exact / near-exact spellings)
   - token-sorted Jaro-Winkler (word reordering)
   - token-set coverage (missing or extra middle names)

Hybrid score: w_vector * vector + w_name * name + w_meta * meta.
Identifier matches are reported alongside the score, never blended into it.

Thresholds:
- >= 0.95 = confirmed
- >= 0.80 = probable
- >= 0.60 = possible
- <  0.60 = unresolved
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable

from cleanco import basename as cleanco_basename
from nameparser import HumanName
from rapidfuzz.distance import JaroWinkler

# -- Thresholds ---------------------------------------------------------------

THRESHOLD_CONFIRMED = 0.95
THRESHOLD_PROBABLE = 0.80
THRESHOLD_POSSIBLE = 0.60

# -- Meta score credits -------------------------------------------------------

META_BIRTH_DATE_CREDIT = 0.5
META_COUNTRY_CREDIT = 0.5

_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_ID_TYPE_NOISE = re.compile(r"[.\-#\s]")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ScoreWeights:
    """Fixed weights of the hybrid score. Tunable through Settings."""

    vector: float = 0.35
    name: float = 0.55
    meta: float = 0.10


def normalize_identifier(raw: str) -> str:
    """Uppercase and drop every non-alphanumeric character.

    "HEMA-621127" -> "HEMA621127", "B 960789" -> "B960789".
    """
    return _NON_ALNUM.sub("", raw.upper())


def normalize_identifier_type(id_type: str) -> str:
    """Strip dots, hyphens, '#' and whitespace, then uppercase ("R.F.C." -> "RFC")."""
    return _ID_TYPE_NOISE.sub("", id_type).upper().strip()


def normalize_name(name: str) -> str:
    """Uppercase, strip diacritics and punctuation, collapse whitespace.

    "María  González-Fernández" -> "MARIA GONZALEZ FERNANDEZ".
    """
    decomposed = unicodedata.normalize("NFD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    upper = _PUNCTUATION.sub(" ", stripped.upper())
    return _WHITESPACE.sub(" ", upper).strip()


def jaro_winkler(s1: str, s2: str, prefix_weight: float = 0.1) -> float:
    """Jaro-Winkler similarity in [0, 1] with a common-prefix bonus."""
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    return JaroWinkler.similarity(s1, s2, prefix_weight=prefix_weight)


def token_set_score(query_tokens: list[str], target_tokens: list[str]) -> float:
    """How well the query tokens are covered by the target tokens.

    Each query token takes its best Jaro-Winkler match among the target
    tokens. The average is lightly penalized when the target has more
    tokens than the query, so "JOAQUIN GUZMAN" still scores well against
    "GUZMAN LOERA JOAQUIN ARCHIVALDO".
    """
    if not query_tokens or not target_tokens:
        return 0.0

    total = 0.0
    for qt in query_tokens:
        total += max(jaro_winkler(qt, tt) for tt in target_tokens)
    coverage = total / len(query_tokens)

    length_ratio = min(len(query_tokens) / len(target_tokens), 1.0)
    return coverage * (0.8 + 0.2 * length_ratio)


def _name_variants(name: str, party_type: str | None) -> list[str]:
    """Normalized spellings of one watchlist name worth comparing against."""
    variants = [normalize_name(name)]

    if party_type == "Individual" and "," in name:
        parsed = HumanName(name)
        reordered = " ".join(p for p in (parsed.first, parsed.middle, parsed.last) if p)
        if reordered:
            variants.append(normalize_name(reordered))
    elif party_type == "Entity":
        stripped = cleanco_basename(name).strip()
        if stripped:
            variants.append(normalize_name(stripped))

    return [v for i, v in enumerate(variants) if v and v not in variants[:i]]


def _score_against(normalized_query: str, query_tokens: list[str], target: str) -> float:
    target_tokens = target.split()
    sorted_query = " ".join(sorted(query_tokens))
    sorted_target = " ".join(sorted(target_tokens))
    return max(
        jaro_winkler(normalized_query, target),
        jaro_winkler(sorted_query, sorted_target),
        token_set_score(query_tokens, target_tokens),
    )


def best_name_score(
    query: str,
    primary_name: str,
    aliases: Iterable[str] | None = None,
    party_type: str | None = None,
) -> float:
    """Best name similarity of *query* against the primary name and all aliases.

    Returns
    -------
    float
        Maximum score found over every name variant and strategy (0.0-1.0).
    """
    normalized_query = normalize_name(query)
    query_tokens = normalized_query.split()
    if not query_tokens:
        return 0.0

    best = 0.0
    for name in [primary_name, *(aliases or [])]:
        if not name:
            continue
        for variant in _name_variants(name, party_type):
            best = max(best, _score_against(normalized_query, query_tokens, variant))
            if best >= 1.0:
                return 1.0
    return best


def compute_meta_score(
    query_birth_date: str | None,
    query_countries: Iterable[str] | None,
    record_birth_date: str | None,
    record_countries: Iterable[str] | None,
) -> float:
    """Partial credit for agreeing auxiliary attributes.

    Birth date equality contributes 0.5 and any country overlap 0.5.
    An attribute missing on either side contributes nothing.
    """
    score = 0.0

    if query_birth_date and record_birth_date:
        if query_birth_date.strip() == record_birth_date.strip():
            score += META_BIRTH_DATE_CREDIT

    query_set = {c.strip().upper() for c in (query_countries or []) if c and c.strip()}
    record_set = {c.strip().upper() for c in (record_countries or []) if c and c.strip()}
    if query_set and record_set and query_set & record_set:
        score += META_COUNTRY_CREDIT

    return score


def compute_hybrid_score(
    vector_score: float,
    name_score: float,
    meta_score: float,
    weights: ScoreWeights | None = None,
) -> float:
    """Fixed-weight linear combination of the three numeric signals."""
    w = weights or ScoreWeights()
    return w.vector * vector_score + w.name * name_score + w.meta * meta_score


def score_to_confidence(score: float) -> str:
    """Convert a numeric score to a confidence tier string.

    Returns
    -------
    str
        One of: 'confirmed', 'probable', 'possible', 'unresolved'.
    """
    if score >= THRESHOLD_CONFIRMED:
        return "confirmed"
    if score >= THRESHOLD_PROBABLE:
        return "probable"
    if score >= THRESHOLD_POSSIBLE:
        return "possible"
    return "unresolved"
