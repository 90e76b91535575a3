from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, field_validator

from renewals.core.config import Settings
from renewals.ledger.enqueue import as_deal_id
from renewals.ledger.orchestrator import CreateRunOptions


_SOURCE_DEAL_ALIASES = AliasChoices(
    "source_deal_id",
    "source_hubspot_deal_id",
    "sourceDealId",
    "deal_id",
    "dealId",
    "hs_object_id",
    "objectId",
)


class SourceFilteredRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source_deal_id: str | None = Field(default=None, validation_alias=_SOURCE_DEAL_ALIASES)

    @field_validator("source_deal_id", mode="before")
    @classmethod
    def _normalize_deal_id(cls, value: Any) -> str | None:
        if value is None:
            return None
        deal_id = as_deal_id(value)
        if deal_id is None:
            raise ValueError('"source_deal_id" must be a non-empty string or a non-negative integer')
        return deal_id


class SnapshotRunRequest(SourceFilteredRequest):
    pass


class CreateRunRequest(SourceFilteredRequest):
    limit: StrictInt | StrictFloat | None = None
    dry_run: StrictBool | None = None
    create_line_items: StrictBool | None = None
    max_batches: StrictInt | None = Field(default=None, gt=0, le=50)

    @field_validator("limit")
    @classmethod
    def _positive_limit(cls, value: int | float | None) -> int | float | None:
        if value is None:
            return None
        if not math.isfinite(value):
            raise ValueError('"limit" must be a number')
        if value <= 0:
            raise ValueError('"limit" must be greater than 0')
        return value

    def to_options(self, settings: Settings) -> CreateRunOptions:
        limit = settings.create_default_limit if self.limit is None else math.floor(self.limit)
        return CreateRunOptions(
            limit=max(1, min(limit, settings.create_max_limit)),
            dry_run=self.dry_run is True,
            create_line_items=self.create_line_items is True,
            source_deal_id=self.source_deal_id,
            max_batches=self.max_batches or settings.create_max_batches,
        )


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    term_end_date: date
    status: str
    created_source: str
    source_deal_id: str | None
    created_deal_id: str | None
    metadata: dict[str, Any] = Field(validation_alias=AliasChoices("entry_metadata", "metadata"))
    created_at: datetime
    updated_at: datetime


class AutomationRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    function_name: str
    trigger_source: str
    run_mode: str | None
    status: str
    http_status: int | None
    correlation_id: str | None
    source_deal_id: str | None
    processed_count: int
    created_count: int
    error_count: int
    error_message: str | None
    metadata: dict[str, Any] = Field(validation_alias=AliasChoices("run_metadata", "metadata"))
    started_at: datetime
    finished_at: datetime | None
