"""Tests for export record lifecycle transitions."""

import uuid
from datetime import timedelta

import pytest

from deid_export.exceptions import InvalidTransition, JobNotFound
from deid_export.models.omop_export import OmopExportRun
from deid_export.models.research_export import ResearchExport
from deid_export.services import job_records
from deid_export.services.storage import SignedArtifact
from tests.factories import FIXED_NOW, add_omop_run, add_research_export


def _signed() -> SignedArtifact:
    return SignedArtifact(
        path="org/x.csv",
        url="https://storage.test/x.csv?token=signed",
        expires_at=FIXED_NOW + timedelta(hours=48),
        size_bytes=42,
    )


class TestClaim:
    def test_pending_to_processing(self, db_session):
        record = add_research_export(db_session)
        assert job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)
        db_session.refresh(record)
        assert record.status == "processing"
        assert record.attempts == 1
        assert record.started_at is not None
        assert record.heartbeat_at is not None

    def test_processing_not_reclaimed(self, db_session):
        record = add_research_export(db_session)
        assert job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)
        assert not job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)
        db_session.refresh(record)
        assert record.attempts == 1

    def test_missing_record(self, db_session):
        assert not job_records.claim(db_session, ResearchExport, uuid.uuid4(), FIXED_NOW)

    def test_load_missing_record_raises(self, db_session):
        with pytest.raises(JobNotFound):
            job_records.load(db_session, OmopExportRun, uuid.uuid4())

    def test_load_returns_record(self, db_session):
        run = add_omop_run(db_session)
        assert job_records.load(db_session, OmopExportRun, run.id) is run

    def test_failed_reclaimed_while_budget_left(self, db_session):
        record = add_research_export(db_session, max_attempts=2)
        job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)
        db_session.refresh(record)
        job_records.mark_failed(record, "boom", FIXED_NOW)
        db_session.commit()
        assert record.retry_pending

        assert job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)
        db_session.refresh(record)
        assert record.status == "processing"
        assert record.attempts == 2
        assert record.error_message is None

        job_records.mark_failed(record, "boom again", FIXED_NOW)
        db_session.commit()
        assert not record.retry_pending
        assert not job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)

    def test_completed_never_reclaimed(self, db_session):
        run = add_omop_run(db_session)
        job_records.claim(db_session, OmopExportRun, run.id, FIXED_NOW)
        db_session.refresh(run)
        job_records.complete_omop_run(run, record_counts={}, file_urls={}, expires_at=None, now=FIXED_NOW)
        db_session.commit()
        assert not job_records.claim(db_session, OmopExportRun, run.id, FIXED_NOW)


class TestTransitions:
    def test_completed_is_terminal(self, db_session):
        record = add_research_export(db_session, status="completed")
        with pytest.raises(InvalidTransition):
            job_records.check_transition(record, "processing")
        with pytest.raises(InvalidTransition):
            job_records.mark_failed(record, "late failure", FIXED_NOW)

    def test_pending_cannot_complete(self, db_session):
        record = add_research_export(db_session)
        with pytest.raises(InvalidTransition):
            job_records.complete_research_export(record, record_count=1, artifact=_signed(), now=FIXED_NOW)

    def test_exhausted_failed_cannot_restart(self, db_session):
        record = add_research_export(db_session, status="failed", attempts=2, max_attempts=2)
        with pytest.raises(InvalidTransition):
            job_records.check_transition(record, "processing")


class TestCompletionFields:
    def test_complete_sets_all_fields(self, db_session):
        record = add_research_export(db_session)
        job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)
        db_session.refresh(record)
        job_records.complete_research_export(record, record_count=3, artifact=_signed(), now=FIXED_NOW)

        assert record.status == "completed"
        assert record.record_count == 3
        assert record.file_url == "https://storage.test/x.csv?token=signed"
        assert record.file_size_bytes == 42
        assert record.expires_at == FIXED_NOW + timedelta(hours=48)
        assert record.deidentified_at == FIXED_NOW
        assert record.error_message is None

    def test_mark_failed_clears_artifact_fields(self, db_session):
        record = add_research_export(db_session)
        job_records.claim(db_session, ResearchExport, record.id, FIXED_NOW)
        db_session.refresh(record)
        record.file_url = "https://stale"
        record.record_count = 9
        job_records.mark_failed(record, "x" * 5000, FIXED_NOW)

        assert record.status == "failed"
        assert record.file_url is None
        assert record.record_count is None
        assert len(record.error_message) == job_records.MAX_ERROR_LENGTH

    def test_mark_failed_default_message(self, db_session):
        run = add_omop_run(db_session)
        job_records.claim(db_session, OmopExportRun, run.id, FIXED_NOW)
        db_session.refresh(run)
        job_records.mark_failed(run, "", FIXED_NOW)
        assert run.error_message == "Unknown error"
        assert run.record_counts is None
        assert run.file_urls is None


class TestReapStale:
    def test_fails_expired_lease_and_spends_budget(self, db_session):
        stale = add_research_export(db_session)
        fresh = add_research_export(db_session)
        job_records.claim(db_session, ResearchExport, stale.id, FIXED_NOW - timedelta(hours=2))
        job_records.claim(db_session, ResearchExport, fresh.id, FIXED_NOW - timedelta(minutes=5))

        reaped = job_records.reap_stale(db_session, ResearchExport, 1800, FIXED_NOW)
        db_session.commit()

        assert reaped == [stale.id]
        db_session.refresh(stale)
        db_session.refresh(fresh)
        assert stale.status == "failed"
        assert stale.attempts == stale.max_attempts
        assert not stale.retry_pending
        assert "lease expired" in stale.error_message
        assert fresh.status == "processing"

    def test_heartbeat_keeps_lease(self, db_session):
        run = add_omop_run(db_session)
        job_records.claim(db_session, OmopExportRun, run.id, FIXED_NOW - timedelta(hours=2))
        job_records.heartbeat(db_session, OmopExportRun, run.id, FIXED_NOW - timedelta(minutes=1))

        assert job_records.reap_stale(db_session, OmopExportRun, 1800, FIXED_NOW) == []
