"""Celery task: de-identified research dataset export.

Enqueued by POST /api/research/exports with the export id and the
requesting organisation. The task id is "research:{export_id}".
"""

from __future__ import annotations

import structlog

from deid_export.celery_app import app
from deid_export.config import settings

logger = structlog.get_logger()


@app.task(
    bind=True,
    name="deid_export.tasks.research_export.export_research_dataset",
    max_retries=settings.RESEARCH_EXPORT_MAX_ATTEMPTS - 1,
    default_retry_delay=settings.RESEARCH_EXPORT_RETRY_DELAY,
    acks_late=True,
)
def export_research_dataset(self, export_id: str, organisation_id: str):
    """Run one attempt of a research export.

    Args:
        export_id: ResearchExport record id.
        organisation_id: Tenant of the requesting actor.
    """
    from deid_export.db.session import get_sync_session_factory
    from deid_export.services.research_pipeline import run_research_export
    from deid_export.tasks.outcomes import settle

    outcome = run_research_export(
        export_id,
        organisation_id,
        session_factory=get_sync_session_factory(),
    )
    return settle(
        self,
        outcome,
        countdown=settings.RESEARCH_EXPORT_RETRY_DELAY,
        export_id=export_id,
    )
