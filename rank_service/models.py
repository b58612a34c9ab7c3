"""Pydantic request/response schemas for the rank tracker API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from rank_service.ranking.types import RunStats

# -- Health -------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    error: str | None = None


# -- Keywords -----------------------------------------------------------------


class ExpandRequest(BaseModel):
    templates: list[str] = Field(..., description="Templates containing the placeholders")
    niche: list[list[str]] = Field(..., description="Rows of [service, core_keyword]")
    locations: list[str]
    niche_placeholder: str = "{niche}"
    location_placeholder: str = "{location}"
    extra_placeholders: dict[str, str] = Field(
        default_factory=dict, description="Further literal substitutions, e.g. {brand}"
    )
    service: str | None = Field(None, description="Only niche rows whose service contains this text")


class ExpandedKeywordOut(BaseModel):
    service: str
    location: str
    core_keyword: str
    keyword: str


class ExpandResponse(BaseModel):
    keywords: list[ExpandedKeywordOut]
    total: int


# -- Rankings -----------------------------------------------------------------


class PhaseResponse(BaseModel):
    total: int
    skipped: int
    submitted: int
    processed: int
    completed: int
    failed: int
    cancelled: int
    pending: int
    done: bool

    @classmethod
    def from_stats(cls, stats: RunStats) -> PhaseResponse:
        return cls(**stats.as_dict())


class SummaryResponse(BaseModel):
    counts: dict[str, int]
    total: int
    open_tasks: int
