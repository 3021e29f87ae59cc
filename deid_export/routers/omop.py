"""OMOP CDM export router (platform-wide, platform_admin only).

Endpoints:
  POST /api/research/omop/export        trigger a manual OMOP export
  GET  /api/research/omop/exports/{id}  run status and per-table download URLs
  GET  /api/research/omop/exports       paginated run history
  GET  /api/research/omop/hwm           current high-water marks
  POST /api/research/omop/hwm/reset     reset every mark to the epoch
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select

from deid_export.config import settings
from deid_export.deps import DB, PlatformAdmin
from deid_export.models.lifecycle import ExportStatus
from deid_export.models.omop_export import OmopExportRun, OmopTrigger
from deid_export.schemas.omop import (
    OmopExportAccepted,
    OmopExportList,
    OmopExportRequest,
    OmopExportStatus,
    WatermarkResponse,
)
from deid_export.services.watermarks import WatermarkStore

logger = structlog.get_logger()

router = APIRouter()


@router.post(
    "/research/omop/export",
    response_model=OmopExportAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_omop_export(db: DB, actor: PlatformAdmin, body: OmopExportRequest | None = None):
    body = body or OmopExportRequest()
    run = OmopExportRun(
        triggered_by=OmopTrigger.MANUAL.value,
        output_mode=body.output_mode,
        full_refresh=body.full_refresh,
        status=ExportStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.OMOP_EXPORT_MAX_ATTEMPTS,
    )
    db.add(run)
    await db.commit()
    run_id = str(run.id)

    try:
        from deid_export.tasks.omop_export import export_omop_cdm

        export_omop_cdm.apply_async(kwargs={"run_id": run_id}, task_id=f"omop:manual:{run_id}")
    except Exception as e:
        logger.error("omop_export_dispatch_failed", run_id=run_id, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "detail": "Export run recorded but could not be queued",
                "id": run_id,
                "status": ExportStatus.PENDING.value,
            },
        )

    logger.info(
        "omop_export_triggered",
        run_id=run_id,
        actor_id=str(actor.actor_id),
        full_refresh=body.full_refresh,
    )
    return OmopExportAccepted(id=run.id, status=ExportStatus.PENDING.value, full_refresh=body.full_refresh)


@router.get("/research/omop/exports/{run_id}", response_model=OmopExportStatus)
async def get_omop_export(run_id: uuid.UUID, db: DB, actor: PlatformAdmin):
    run = (await db.execute(select(OmopExportRun).where(OmopExportRun.id == run_id))).scalar_one_or_none()
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="OMOP export not found")
    return OmopExportStatus.model_validate(run)


@router.get("/research/omop/exports", response_model=OmopExportList)
async def list_omop_exports(
    db: DB,
    actor: PlatformAdmin,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    total = (await db.execute(select(func.count()).select_from(OmopExportRun))).scalar_one()
    result = await db.execute(
        select(OmopExportRun)
        .order_by(OmopExportRun.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return OmopExportList(
        items=[OmopExportStatus.model_validate(r) for r in result.scalars().all()],
        total=total,
        page=page,
        limit=limit,
    )


def _snapshot(session) -> WatermarkResponse:
    store = WatermarkStore(session)
    return WatermarkResponse(marks=store.read(), updated_at=store.updated_at())


@router.get("/research/omop/hwm", response_model=WatermarkResponse)
async def get_watermarks(db: DB, actor: PlatformAdmin):
    return await db.run_sync(_snapshot)


@router.post("/research/omop/hwm/reset", response_model=WatermarkResponse)
async def reset_watermarks(db: DB, actor: PlatformAdmin):
    """Zero every mark; the next OMOP run re-exports all history."""

    def _reset(session) -> WatermarkResponse:
        WatermarkStore(session).reset_all()
        return _snapshot(session)

    snapshot = await db.run_sync(_reset)
    await db.commit()
    logger.warning("omop_watermarks_reset_requested", actor_id=str(actor.actor_id))
    return snapshot
