"""Pydantic schemas for OMOP export endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class OmopExportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    output_mode: Literal["tsv_upload"] = "tsv_upload"
    full_refresh: bool = False


class OmopExportAccepted(BaseModel):
    id: uuid.UUID
    status: str
    full_refresh: bool
    message: str = "OMOP CDM export queued. Poll GET /api/research/omop/exports/{id} for status."


class OmopExportStatus(BaseModel):
    id: uuid.UUID
    status: str
    triggered_by: str
    output_mode: str
    full_refresh: bool
    record_counts: dict[str, int] | None = None
    file_urls: dict[str, str] | None = None
    expires_at: datetime | None = None
    error_message: str | None = None
    attempts: int
    max_attempts: int
    retry_pending: bool
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class OmopExportList(BaseModel):
    items: list[OmopExportStatus]
    total: int
    page: int
    limit: int


class WatermarkResponse(BaseModel):
    marks: dict[str, datetime]
    updated_at: datetime
