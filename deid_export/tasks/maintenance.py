"""Periodic maintenance: fail export records whose worker stopped heartbeating."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from deid_export.celery_app import app
from deid_export.config import settings

logger = structlog.get_logger()


@app.task(name="deid_export.tasks.maintenance.reap_stale_exports")
def reap_stale_exports() -> dict[str, int]:
    from deid_export.db.session import get_sync_session_factory
    from deid_export.models.omop_export import OmopExportRun
    from deid_export.models.research_export import ResearchExport
    from deid_export.services.job_records import reap_stale

    now = datetime.now(timezone.utc)
    reaped: dict[str, int] = {}
    with get_sync_session_factory()() as session:
        for model in (ResearchExport, OmopExportRun):
            ids = reap_stale(session, model, settings.EXPORT_LEASE_SECONDS, now)
            reaped[model.__tablename__] = len(ids)
        session.commit()

    if any(reaped.values()):
        logger.warning("stale_exports_reaped", **reaped)
    return reaped
