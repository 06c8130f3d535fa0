"""Registry of the watchlist datasets Tripwire can ingest and index.

Each dataset knows how to turn a stored record into the text that gets
embedded and the metadata bag stored next to its vector. Embedding text is
identity focused: names, aliases and identifier numbers. Free-text fields
like addresses and remarks are left out because they drown the name signal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from tripwire.db.models import WatchlistRecord

OFAC_SDN = "ofac_sdn"
UNSC = "unsc"
SAT_69B = "sat_69b"


class UnknownDatasetError(ValueError):
    """Raised for a dataset name outside the registry."""


def _identity_text(record: WatchlistRecord) -> list[str]:
    parts = [record.primary_name, *[a for a in record.aliases if a]]
    parts.extend(f"ID:{ident.number}" for ident in record.identifiers if ident.number)
    return parts


def _base_metadata(record: WatchlistRecord) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "dataset": record.dataset,
        "recordId": record.id,
        "partyType": record.party_type,
        "sourceList": record.source_list,
    }
    if record.birth_date:
        metadata["birthDate"] = record.birth_date
    return metadata


def _ofac_metadata(record: WatchlistRecord) -> dict[str, Any]:
    metadata = _base_metadata(record)
    programs = record.extra.get("programs")
    if programs:
        metadata["programs"] = list(programs)
    return metadata


def _unsc_metadata(record: WatchlistRecord) -> dict[str, Any]:
    metadata = _base_metadata(record)
    for key in ("gender", "unListType"):
        if record.extra.get(key):
            metadata[key] = record.extra[key]
    if record.extra.get("nationalities"):
        metadata["nationalities"] = list(record.extra["nationalities"])
    return metadata


def _sat69b_text(record: WatchlistRecord) -> list[str]:
    parts = [record.primary_name]
    rfc = record.extra.get("rfc")
    if rfc:
        parts.append(f"RFC:{rfc}")
    status = record.extra.get("taxpayerStatus")
    if status:
        parts.append(f"Situacion:{status}")
    return parts


def _sat69b_metadata(record: WatchlistRecord) -> dict[str, Any]:
    metadata = _base_metadata(record)
    for key in ("rfc", "taxpayerStatus"):
        if record.extra.get(key):
            metadata[key] = record.extra[key]
    return metadata


@dataclass(frozen=True)
class DatasetSpec:
    """How one dataset is labelled, embedded and filtered."""

    name: str
    source_list: str
    text_parts: Callable[[WatchlistRecord], list[str]] = _identity_text
    metadata: Callable[[WatchlistRecord], dict[str, Any]] = _base_metadata
    source_types: tuple[str, ...] = field(default_factory=tuple)

    def compose_text(self, record: WatchlistRecord) -> str:
        return " ".join(p.strip() for p in self.text_parts(record) if p and p.strip())

    def compose_metadata(self, record: WatchlistRecord) -> dict[str, Any]:
        return self.metadata(record)


DATASETS: dict[str, DatasetSpec] = {
    OFAC_SDN: DatasetSpec(
        name=OFAC_SDN,
        source_list="SDN",
        metadata=_ofac_metadata,
        source_types=("sdn_xml",),
    ),
    UNSC: DatasetSpec(
        name=UNSC,
        source_list="UNSC",
        metadata=_unsc_metadata,
        source_types=("unsc_xml",),
    ),
    SAT_69B: DatasetSpec(
        name=SAT_69B,
        source_list="SAT69B",
        text_parts=_sat69b_text,
        metadata=_sat69b_metadata,
        source_types=("sat69b_csv",),
    ),
}


def get_dataset(name: str) -> DatasetSpec:
    """Look up a dataset by name, raising UnknownDatasetError if absent."""
    try:
        return DATASETS[name]
    except KeyError:
        raise UnknownDatasetError(f"Unknown dataset: {name}") from None


def vector_id(dataset: str, record_id: str) -> str:
    """Vector id for a record: ``{dataset}:{record_id}``."""
    return f"{dataset}:{record_id}"


def parse_vector_id(vid: str) -> tuple[str, str]:
    """Split a vector id on its first colon; record ids may contain colons."""
    dataset, _, record_id = vid.partition(":")
    return dataset, record_id
