"""Research exports router: trigger, status, list.

Endpoints:
  POST /api/research/exports       trigger a de-identified export (Celery task)
  GET  /api/research/exports/{id}  export status and signed download URL
  GET  /api/research/exports       paginated list for the caller's organisation
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import func, select

from deid_export.config import settings
from deid_export.deps import DB, ResearchAdmin
from deid_export.models.cohort import CohortDefinition
from deid_export.models.lifecycle import ExportStatus
from deid_export.models.research_export import DEIDENTIFICATION_METHOD, ResearchExport
from deid_export.schemas.research import (
    ResearchExportAccepted,
    ResearchExportList,
    ResearchExportRequest,
    ResearchExportStatus,
    ResearchFiltersIn,
)
from deid_export.services.deidentify import resolve_fields
from deid_export.services.extraction import ResearchFilters, build_research_query

logger = structlog.get_logger()

router = APIRouter()


async def _merge_cohort_filters(
    db: DB, body: ResearchExportRequest, organisation_id: uuid.UUID
) -> ResearchFiltersIn:
    """Cohort filters first, explicitly set request filters on top."""
    if body.cohort_id is None:
        return body.filters
    cohort = (
        await db.execute(
            select(CohortDefinition).where(
                CohortDefinition.id == body.cohort_id,
                CohortDefinition.organisation_id == organisation_id,
            )
        )
    ).scalar_one_or_none()
    if cohort is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cohort not found")

    known = ResearchFiltersIn.model_fields
    merged = {k: v for k, v in (cohort.filters or {}).items() if k in known}
    merged.update(body.filters.model_dump(exclude_unset=True))
    try:
        return ResearchFiltersIn.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Cohort filters are not valid export filters",
        ) from e


@router.post(
    "/research/exports",
    response_model=ResearchExportAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_research_export(body: ResearchExportRequest, db: DB, actor: ResearchAdmin):
    """Create a pending export record and dispatch the export task.

    The record is committed before the task is enqueued, so a dispatch
    failure leaves a visible pending row for reconciliation.
    """
    filters_in = await _merge_cohort_filters(db, body, actor.organisation_id)
    filters_snapshot = filters_in.model_dump(mode="json", exclude_none=True)

    count_query = build_research_query(
        actor.organisation_id,
        ResearchFilters.from_dict(filters_snapshot),
        today=datetime.now(timezone.utc).date(),
        default_days=settings.EXPORT_DEFAULT_WINDOW_DAYS,
        count=True,
    )
    estimated_rows = int((await db.execute(count_query)).scalar_one() or 0)

    export = ResearchExport(
        requested_by=actor.actor_id,
        organisation_id=actor.organisation_id,
        cohort_id=body.cohort_id,
        filters=filters_snapshot,
        format=body.format,
        include_fields=resolve_fields(body.include_fields),
        status=ExportStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.RESEARCH_EXPORT_MAX_ATTEMPTS,
        deidentification_method=DEIDENTIFICATION_METHOD,
    )
    db.add(export)
    await db.commit()
    export_id = str(export.id)

    # Dispatch Celery task (import here to avoid circular deps)
    try:
        from deid_export.tasks.research_export import export_research_dataset

        export_research_dataset.apply_async(
            kwargs={"export_id": export_id, "organisation_id": str(actor.organisation_id)},
            task_id=f"research:{export_id}",
        )
    except Exception as e:
        logger.error("research_export_dispatch_failed", export_id=export_id, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "detail": "Export recorded but could not be queued",
                "id": export_id,
                "status": ExportStatus.PENDING.value,
            },
        )

    logger.info(
        "research_export_triggered",
        export_id=export_id,
        organisation_id=str(actor.organisation_id),
        format=body.format,
        estimated_rows=estimated_rows,
    )
    return ResearchExportAccepted(
        id=export.id,
        status=ExportStatus.PENDING.value,
        estimated_rows=estimated_rows,
        deidentification_method=DEIDENTIFICATION_METHOD,
    )


@router.get("/research/exports/{export_id}", response_model=ResearchExportStatus)
async def get_research_export(export_id: uuid.UUID, db: DB, actor: ResearchAdmin):
    """Export status. Records of other organisations are reported as missing."""
    result = await db.execute(
        select(ResearchExport).where(
            ResearchExport.id == export_id,
            ResearchExport.organisation_id == actor.organisation_id,
        )
    )
    export = result.scalar_one_or_none()
    if not export:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export not found")
    return ResearchExportStatus.model_validate(export)


@router.get("/research/exports", response_model=ResearchExportList)
async def list_research_exports(
    db: DB,
    actor: ResearchAdmin,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    scope = ResearchExport.organisation_id == actor.organisation_id
    total = (await db.execute(select(func.count()).select_from(ResearchExport).where(scope))).scalar_one()
    result = await db.execute(
        select(ResearchExport)
        .where(scope)
        .order_by(ResearchExport.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return ResearchExportList(
        items=[ResearchExportStatus.model_validate(e) for e in result.scalars().all()],
        total=total,
        page=page,
        limit=limit,
    )
