"""Pydantic schemas for research export endpoints."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

RiskLevel = Literal["low", "moderate", "high", "critical"]


class ResearchFiltersIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    active_only: bool = True
    risk_levels: list[RiskLevel] | None = None
    period_start: date | None = None
    period_end: date | None = None
    diagnoses: list[str] | None = None
    age_min: int | None = Field(default=None, ge=0, le=150)
    age_max: int | None = Field(default=None, ge=0, le=150)

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.period_start and self.period_end and self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        if self.age_min is not None and self.age_max is not None and self.age_min > self.age_max:
            raise ValueError("age_min must not be greater than age_max")
        return self


class ResearchExportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filters: ResearchFiltersIn = Field(default_factory=ResearchFiltersIn)
    format: Literal["csv", "ndjson"] = "ndjson"
    include_fields: list[str] | None = None
    cohort_id: uuid.UUID | None = None


class ResearchExportAccepted(BaseModel):
    id: uuid.UUID
    status: str
    estimated_rows: int
    deidentification_method: str
    message: str = "Export queued. Poll GET /api/research/exports/{id} for status."


class ResearchExportStatus(BaseModel):
    id: uuid.UUID
    status: str
    format: str
    filters: dict
    include_fields: list[str]
    cohort_id: uuid.UUID | None = None
    record_count: int | None = None
    file_url: str | None = None
    file_size_bytes: int | None = None
    expires_at: datetime | None = None
    error_message: str | None = None
    attempts: int
    max_attempts: int
    retry_pending: bool
    deidentification_method: str
    deidentified_at: datetime | None = None
    created_at: datetime
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class ResearchExportList(BaseModel):
    items: list[ResearchExportStatus]
    total: int
    page: int
    limit: int
