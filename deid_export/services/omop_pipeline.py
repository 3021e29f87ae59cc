"""Incremental OMOP CDM export job.

Flow:
    1. Claim the run record
    2. Read per-table high-water marks (epoch for a full refresh)
    3. For each source table: fetch rows changed after the mark, map them
    4. Upload one TSV per non-empty OMOP table and sign it
    5. Advance the marks and complete the run in one transaction, unless
       the marks were reset while the run was in flight

A mark only advances to the newest change timestamp actually exported
from its table, so rows committed while the run was extracting are picked
up by the next run.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.orm import Session, sessionmaker

from deid_export.config import settings
from deid_export.exceptions import ConfigurationError, JobNotFound
from deid_export.models.omop_export import EPOCH, WATERMARK_TABLES, OmopExportRun
from deid_export.services import job_records
from deid_export.services.deidentify import Pseudonymizer
from deid_export.services.extraction import fetch_changed_rows, fetch_observation_periods, to_datetime
from deid_export.services.omop_mapper import OMOP_COLUMNS, OMOP_TABLES, OmopMapper
from deid_export.services.outcome import Outcome
from deid_export.services.research_pipeline import utcnow
from deid_export.services.serializer import serialize
from deid_export.services.storage import ArtifactStore
from deid_export.services.watermarks import WatermarkStore

logger = structlog.get_logger()


def artifact_path(run: OmopExportRun, omop_table: str) -> str:
    return f"omop/{run.id}/{omop_table}.tsv"


def _fail(session: Session, run: OmopExportRun, message: str, clock, final: bool = False) -> OmopExportRun:
    session.rollback()
    run = session.get(OmopExportRun, run.id)
    job_records.mark_failed(run, message, clock())
    if final:
        run.attempts = run.max_attempts
    session.commit()
    return run


def extract_batch(
    session: Session,
    mapper: OmopMapper,
    since: dict[str, datetime],
    on_progress: Callable[[], None] | None = None,
) -> tuple[dict[str, list[dict]], dict[str, datetime]]:
    """Fetch and map every source table changed after its mark.

    Returns:
        (rows per OMOP table, newest exported change timestamp per source
        table). Tables with no changed rows have no timestamp entry.
    """
    tables: dict[str, list[dict]] = {name: [] for name in OMOP_TABLES}
    newest: dict[str, datetime] = {}
    entry_patients: set[str] = set()

    for source in WATERMARK_TABLES:
        rows = fetch_changed_rows(session, source, since[source])
        if rows:
            newest[source] = max(to_datetime(r["updated_at"]) for r in rows)
        if source == "daily_entries":
            entry_patients = {str(r["patient_id"]) for r in rows}
        for omop_table, mapped in mapper.map_source(source, rows).items():
            tables[omop_table].extend(mapped)
        if on_progress:
            on_progress()

    # Observation periods are re-derived for patients with new diary entries
    if entry_patients:
        tables["observation_period"] = [
            mapper.observation_period(p)
            for p in fetch_observation_periods(session)
            if str(p["patient_id"]) in entry_patients
        ]
    return tables, newest


def run_omop_export(
    run_id: uuid.UUID | str,
    *,
    session_factory: sessionmaker[Session],
    store: ArtifactStore | None = None,
    secret: str | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Outcome:
    """Run one attempt of an OMOP export.

    Args:
        run_id: OmopExportRun id from the queue payload.
        session_factory: Sync session factory (expire_on_commit=False).
        store: Artifact store; built from settings (and closed) when omitted.
        secret: Pseudonym key; defaults to settings.PSEUDONYM_SECRET.
        clock: Time source, injectable for tests.
    """
    run_id = uuid.UUID(str(run_id))
    log = logger.bind(run_id=str(run_id))

    with session_factory() as session:
        try:
            run = job_records.load(session, OmopExportRun, run_id)
        except JobNotFound as e:
            log.warning("omop_export_missing")
            return Outcome.skipped(str(e))

        if not job_records.claim(session, OmopExportRun, run_id, clock()):
            log.info("omop_export_not_claimed", status=run.status)
            return Outcome.skipped(f"export run is {run.status}")
        session.refresh(run)
        log = log.bind(attempt=run.attempts, full_refresh=run.full_refresh)
        log.info("omop_export_started", triggered_by=run.triggered_by)

        owns_store = store is None
        try:
            mapper = OmopMapper(Pseudonymizer(settings.PSEUDONYM_SECRET if secret is None else secret), clock())
            store = store or ArtifactStore.from_settings()
        except ConfigurationError as e:
            log.error("omop_export_misconfigured", error=str(e))
            _fail(session, run, str(e), clock, final=True)
            return Outcome.fatal(str(e))

        def beat() -> None:
            job_records.heartbeat(session, OmopExportRun, run_id, clock())

        try:
            marks = WatermarkStore(session)
            generation = marks.generation()
            if run.full_refresh:
                # Stored marks are left alone; advance_many below cannot move them back
                since = {table: EPOCH for table in WATERMARK_TABLES}
            else:
                since = marks.read()
            session.commit()

            tables, newest = extract_batch(session, mapper, since, on_progress=beat)

            record_counts: dict[str, int] = {}
            file_urls: dict[str, str] = {}
            expires_at = None
            for omop_table in OMOP_TABLES:
                rows = tables[omop_table]
                if not rows:
                    continue
                artifact = serialize(rows, "tsv", OMOP_COLUMNS[omop_table])
                signed = store.publish(
                    artifact_path(run, omop_table),
                    artifact,
                    settings.SIGNED_URL_TTL_SECONDS,
                    clock(),
                )
                record_counts[omop_table] = len(rows)
                file_urls[omop_table] = signed.url
                expires_at = signed.expires_at
                beat()

            # Mark advance and completion commit together
            marks.advance_many(newest, generation=generation)
            job_records.complete_omop_run(
                run,
                record_counts=record_counts,
                file_urls=file_urls,
                expires_at=expires_at,
                now=clock(),
            )
            session.commit()
        except Exception as e:
            log.error("omop_export_failed", error=str(e), error_type=type(e).__name__)
            run = _fail(session, run, f"{type(e).__name__}: {e}", clock)
            if run.retry_pending:
                return Outcome.retryable(run.error_message)
            return Outcome.fatal(run.error_message)
        finally:
            if owns_store:
                store.close()

        log.info(
            "omop_export_complete",
            tables=len(record_counts),
            records=sum(record_counts.values()),
            advanced=sorted(newest),
        )
        return Outcome.completed(f"{sum(record_counts.values())} rows in {len(record_counts)} tables")
