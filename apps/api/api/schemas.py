from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field


class EntityResponse(BaseModel):
    id: UUID
    name: str


class FilterDataResponse(BaseModel):
    authors: list[EntityResponse] = Field(default_factory=list)
    series: list[EntityResponse] = Field(default_factory=list)
    narrators: list[str] = Field(default_factory=list)
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    publishers: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)


class ScanQueuedResponse(BaseModel):
    library_id: UUID
    status: Literal["queued"]
    message: str


class ScanCancelResponse(BaseModel):
    library_id: UUID
    status: Literal["cancel_requested", "not_running"]


class ActiveScanResponse(BaseModel):
    id: UUID
    library_id: UUID
    library_name: str
    type: str
    state: str
    started_at: datetime | None = None
    results: dict[str, int]


class QuickMatchResponse(BaseModel):
    updated: bool
    warning: str | None = None
    item: dict[str, Any] | None = None
