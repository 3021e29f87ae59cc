"""Research export job: extract, de-identify, serialize, publish.

Called by the Celery task with the queue payload. The handler owns the
record's lifecycle from claim to completed/failed and reports an Outcome;
it never raises for a failed attempt.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.orm import Session, sessionmaker

from deid_export.config import settings
from deid_export.exceptions import ConfigurationError, JobNotFound
from deid_export.models.research_export import ResearchExport
from deid_export.services import job_records
from deid_export.services.deidentify import Pseudonymizer, SafeHarbourTransformer
from deid_export.services.extraction import ResearchFilters, fetch_research_rows
from deid_export.services.outcome import Outcome
from deid_export.services.serializer import serialize
from deid_export.services.storage import ArtifactStore

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def artifact_path(record: ResearchExport, extension: str) -> str:
    return f"{record.organisation_id}/{record.id}.{extension}"


def _fail(session: Session, record: ResearchExport, message: str, clock, final: bool = False) -> ResearchExport:
    session.rollback()
    record = session.get(ResearchExport, record.id)
    job_records.mark_failed(record, message, clock())
    if final:
        record.attempts = record.max_attempts
    session.commit()
    return record


def run_research_export(
    export_id: uuid.UUID | str,
    organisation_id: uuid.UUID | str,
    *,
    session_factory: sessionmaker[Session],
    store: ArtifactStore | None = None,
    secret: str | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Outcome:
    """Run one attempt of a research export.

    Args:
        export_id: ResearchExport id from the queue payload.
        organisation_id: Tenant from the queue payload; must match the record.
        session_factory: Sync session factory (expire_on_commit=False).
        store: Artifact store; built from settings (and closed) when omitted.
        secret: Pseudonym key; defaults to settings.PSEUDONYM_SECRET.
        clock: Time source, injectable for tests.

    Returns:
        Outcome for the queue wrapper.
    """
    export_id = uuid.UUID(str(export_id))
    log = logger.bind(export_id=str(export_id))

    with session_factory() as session:
        try:
            record = job_records.load(session, ResearchExport, export_id)
        except JobNotFound as e:
            log.warning("research_export_missing")
            return Outcome.skipped(str(e))

        if str(record.organisation_id) != str(organisation_id):
            # Payload and record disagree on the tenant; never run it
            log.error("research_export_tenant_mismatch")
            return Outcome.fatal("organisation does not match export record")

        if not job_records.claim(session, ResearchExport, export_id, clock()):
            log.info("research_export_not_claimed", status=record.status)
            return Outcome.skipped(f"export is {record.status}")
        session.refresh(record)
        log = log.bind(attempt=record.attempts)
        log.info("research_export_started")

        owns_store = store is None
        try:
            pseudonymizer = Pseudonymizer(settings.PSEUDONYM_SECRET if secret is None else secret)
            store = store or ArtifactStore.from_settings()
        except ConfigurationError as e:
            log.error("research_export_misconfigured", error=str(e))
            _fail(session, record, str(e), clock, final=True)
            return Outcome.fatal(str(e))

        try:
            as_of = clock()
            rows = fetch_research_rows(
                session,
                record.organisation_id,
                ResearchFilters.from_dict(record.filters),
                today=as_of.date(),
                default_days=settings.EXPORT_DEFAULT_WINDOW_DAYS,
            )
            session.commit()
            job_records.heartbeat(session, ResearchExport, export_id, clock())

            transformer = SafeHarbourTransformer(pseudonymizer, as_of, record.include_fields or None)
            deidentified = transformer.transform_all(rows)
            artifact = serialize(deidentified, record.format, transformer.fields)
            job_records.heartbeat(session, ResearchExport, export_id, clock())

            signed = store.publish(
                artifact_path(record, artifact.extension),
                artifact,
                settings.SIGNED_URL_TTL_SECONDS,
                clock(),
            )
            job_records.complete_research_export(
                record, record_count=len(deidentified), artifact=signed, now=clock()
            )
            session.commit()
        except Exception as e:
            log.error("research_export_failed", error=str(e), error_type=type(e).__name__)
            record = _fail(session, record, f"{type(e).__name__}: {e}", clock)
            if record.retry_pending:
                return Outcome.retryable(record.error_message)
            return Outcome.fatal(record.error_message)
        finally:
            if owns_store:
                store.close()

        log.info(
            "research_export_complete",
            records=record.record_count,
            size_bytes=record.file_size_bytes,
            format=record.format,
        )
        return Outcome.completed(f"{record.record_count} records")
