"""Pydantic models matching the SQLite table schemas.

These are shared between the DB layer and API responses. Public
responses use camelCase aliases, internal callbacks use field names.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PartyType = Literal["Individual", "Entity", "Vessel", "Aircraft"]
RunStatus = Literal["pending", "running", "completed", "failed"]


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Identifier(_ApiModel):
    """A structured identity document attached to a watchlist record."""

    type: str = ""
    number: str
    country: str | None = None
    issue_date: str | None = None
    expiration_date: str | None = None


class WatchlistRecordIn(BaseModel):
    """A record as delivered by the batch worker to the internal callbacks."""

    id: str
    party_type: PartyType = "Individual"
    primary_name: str
    aliases: list[str] = Field(default_factory=list)
    birth_date: str | None = None
    birth_place: str | None = None
    addresses: list[str] = Field(default_factory=list)
    identifiers: list[Identifier] = Field(default_factory=list)
    remarks: str | None = None
    source_list: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)


class WatchlistRecord(_ApiModel):
    """A stored watchlist entity (one per dataset and record id)."""

    dataset: str
    id: str
    party_type: str
    primary_name: str
    aliases: list[str] = Field(default_factory=list)
    birth_date: str | None = None
    birth_place: str | None = None
    addresses: list[str] = Field(default_factory=list)
    identifiers: list[Identifier] = Field(default_factory=list)
    remarks: str | None = None
    source_list: str
    extra: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WatchlistRecord":
        """Build a record from a watchlist_record row, decoding JSON columns."""
        data = dict(row)
        for column, default in (
            ("aliases", []),
            ("addresses", []),
            ("identifiers", []),
            ("extra", {}),
        ):
            raw = data.get(column)
            try:
                data[column] = json.loads(raw) if isinstance(raw, str) else (raw or default)
            except json.JSONDecodeError:
                data[column] = default
        return cls.model_validate(data)


class IngestionRun(_ApiModel):
    """An ingestion run and its stored progress fields."""

    id: int
    dataset: str
    source_type: str
    source_url: str
    status: RunStatus
    started_at: str
    finished_at: str | None = None
    progress_phase: str | None = None
    progress_records_processed: int = 0
    progress_total_estimate: int = 0
    progress_percentage: int = 0
    progress_current_batch: int = 0
    progress_updated_at: str | None = None
    vectorize_job_id: str | None = None
    stats: dict[str, Any] | None = None
    error_message: str | None = None
    updated_at: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "IngestionRun":
        data = dict(row)
        raw_stats = data.get("stats")
        try:
            data["stats"] = json.loads(raw_stats) if raw_stats else None
        except json.JSONDecodeError:
            data["stats"] = None
        return cls.model_validate(data)


class IngestionProgress(_ApiModel):
    """Progress snapshot returned to pollers."""

    phase: str
    records_processed: int = 0
    total_records_estimate: int = 0
    percentage: int = 0
    current_batch: int = 0
    updated_at: str | None = None
