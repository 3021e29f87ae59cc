"""Celery tasks: incremental OMOP CDM export and its nightly trigger.

The omop_exports queue is served by a single-concurrency worker, so runs
never overlap on the watermark row.
"""

from __future__ import annotations

import structlog

from deid_export.celery_app import app
from deid_export.config import settings

logger = structlog.get_logger()


@app.task(
    bind=True,
    name="deid_export.tasks.omop_export.export_omop_cdm",
    max_retries=settings.OMOP_EXPORT_MAX_ATTEMPTS - 1,
    default_retry_delay=settings.OMOP_EXPORT_RETRY_DELAY,
    acks_late=True,
)
def export_omop_cdm(self, run_id: str):
    """Run one attempt of an OMOP export run."""
    from deid_export.db.session import get_sync_session_factory
    from deid_export.services.omop_pipeline import run_omop_export
    from deid_export.tasks.outcomes import settle

    outcome = run_omop_export(run_id, session_factory=get_sync_session_factory())
    return settle(self, outcome, countdown=settings.OMOP_EXPORT_RETRY_DELAY, run_id=run_id)


@app.task(name="deid_export.tasks.omop_export.schedule_nightly_omop_export")
def schedule_nightly_omop_export():
    """Create a nightly run record and enqueue it.

    Skipped while another run is still pending or processing.
    """
    from sqlalchemy import select

    from deid_export.db.session import get_sync_session_factory
    from deid_export.models.lifecycle import ExportStatus
    from deid_export.models.omop_export import OmopExportRun, OmopTrigger

    session_factory = get_sync_session_factory()
    with session_factory() as session:
        active = session.execute(
            select(OmopExportRun.id)
            .where(OmopExportRun.status.in_([ExportStatus.PENDING.value, ExportStatus.PROCESSING.value]))
            .limit(1)
        ).scalar_one_or_none()
        if active is not None:
            logger.info("omop_nightly_skipped", active_run_id=str(active))
            return None

        run = OmopExportRun(
            triggered_by=OmopTrigger.NIGHTLY.value,
            full_refresh=False,
            max_attempts=settings.OMOP_EXPORT_MAX_ATTEMPTS,
        )
        session.add(run)
        session.commit()
        run_id = str(run.id)

    export_omop_cdm.apply_async(kwargs={"run_id": run_id}, task_id=f"omop:nightly:{run_id}")
    logger.info("omop_nightly_enqueued", run_id=run_id)
    return run_id
