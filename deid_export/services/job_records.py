"""Export job record lifecycle.

    pending ──claim──▶ processing ──▶ completed
                           │
                           └──────▶ failed ──claim (retry, budget left)──▶ processing

Records are created by the trigger endpoints and mutated only by the
worker that claimed them. Claims are a single conditional UPDATE so two
deliveries of the same queue message cannot both run the job. A
`processing` row is never re-claimed; if its worker dies, the lease
reaper marks it failed for an operator to look at.

Invariants kept here:
- file_url / record_count (file_urls / record_counts) are set iff completed
- error_message is set iff failed
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from deid_export.exceptions import InvalidTransition, JobNotFound
from deid_export.models.lifecycle import ExportStatus
from deid_export.models.omop_export import OmopExportRun
from deid_export.models.research_export import ResearchExport
from deid_export.services.storage import SignedArtifact

logger = structlog.get_logger()

ExportModel = type[ResearchExport] | type[OmopExportRun]

PENDING = ExportStatus.PENDING.value
PROCESSING = ExportStatus.PROCESSING.value
COMPLETED = ExportStatus.COMPLETED.value
FAILED = ExportStatus.FAILED.value

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING}),
    PROCESSING: frozenset({COMPLETED, FAILED}),
    FAILED: frozenset({PROCESSING}),
    COMPLETED: frozenset(),
}

MAX_ERROR_LENGTH = 2000


def check_transition(record: ResearchExport | OmopExportRun, target: str) -> None:
    current = record.status
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, target)
    if current == FAILED and record.attempts >= record.max_attempts:
        raise InvalidTransition(current, target)


def load(session: Session, model: ExportModel, record_id: uuid.UUID) -> ResearchExport | OmopExportRun:
    record = session.get(model, record_id)
    if record is None:
        raise JobNotFound(f"{model.__tablename__} row {record_id} not found")
    return record


def claim(session: Session, model: ExportModel, record_id: uuid.UUID, now: datetime) -> bool:
    """Atomically move a record to processing and count the attempt.

    Commits immediately so a crash mid-run leaves a visible processing row.

    Returns:
        False if the record is missing, already running, completed, or
        failed with its attempt budget spent.
    """
    stmt = (
        update(model)
        .where(model.id == record_id)
        .where(
            or_(
                model.status == PENDING,
                and_(model.status == FAILED, model.attempts < model.max_attempts),
            )
        )
        .values(
            status=PROCESSING,
            attempts=model.attempts + 1,
            started_at=now,
            heartbeat_at=now,
            error_message=None,
            completed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.commit()
    return result.rowcount == 1


def heartbeat(session: Session, model: ExportModel, record_id: uuid.UUID, now: datetime) -> None:
    """Refresh the lease on a processing record."""
    session.execute(
        update(model)
        .where(model.id == record_id, model.status == PROCESSING)
        .values(heartbeat_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def mark_failed(record: ResearchExport | OmopExportRun, message: str, now: datetime) -> None:
    """Record a failed attempt. The caller commits."""
    check_transition(record, FAILED)
    record.status = FAILED
    record.error_message = (message or "Unknown error")[:MAX_ERROR_LENGTH]
    record.heartbeat_at = now
    if isinstance(record, ResearchExport):
        record.record_count = None
        record.file_url = None
        record.file_size_bytes = None
    else:
        record.record_counts = None
        record.file_urls = None
    record.expires_at = None


def complete_research_export(
    record: ResearchExport,
    *,
    record_count: int,
    artifact: SignedArtifact,
    now: datetime,
) -> None:
    """Set every completion field together. The caller commits."""
    check_transition(record, COMPLETED)
    record.status = COMPLETED
    record.record_count = record_count
    record.file_url = artifact.url
    record.file_size_bytes = artifact.size_bytes
    record.expires_at = artifact.expires_at
    record.deidentified_at = now
    record.completed_at = now
    record.heartbeat_at = now
    record.error_message = None


def complete_omop_run(
    record: OmopExportRun,
    *,
    record_counts: dict[str, int],
    file_urls: dict[str, str],
    expires_at: datetime | None,
    now: datetime,
) -> None:
    check_transition(record, COMPLETED)
    record.status = COMPLETED
    record.record_counts = record_counts
    record.file_urls = file_urls
    record.expires_at = expires_at
    record.completed_at = now
    record.heartbeat_at = now
    record.error_message = None


def reap_stale(session: Session, model: ExportModel, lease_seconds: int, now: datetime) -> list[uuid.UUID]:
    """Fail processing records whose lease expired.

    The attempt budget is spent as well, so a late redelivery of the queue
    message cannot silently re-run a job that stalled for an unknown reason.
    The caller commits.
    """
    cutoff = now - timedelta(seconds=lease_seconds)
    stale = session.execute(
        select(model)
        .where(model.status == PROCESSING, model.heartbeat_at < cutoff)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    ).scalars().all()

    for record in stale:
        mark_failed(
            record,
            f"Worker lease expired (no heartbeat since {record.heartbeat_at.isoformat()}); "
            "re-trigger the export after investigating the stalled run",
            now,
        )
        record.attempts = record.max_attempts
        logger.warning("export_lease_expired", table=model.__tablename__, export_id=str(record.id))

    return [r.id for r in stale]
