"""Tests for the OMOP high-water mark store."""

from datetime import timedelta

import pytest

from deid_export.models.omop_export import EPOCH, WATERMARK_TABLES
from deid_export.services.watermarks import WatermarkStore
from tests.factories import utc


class TestRead:
    def test_starts_at_epoch(self, db_session):
        marks = WatermarkStore(db_session).read()
        assert set(marks) == set(WATERMARK_TABLES)
        assert all(mark == EPOCH for mark in marks.values())

    def test_values_are_utc_aware_after_reload(self, session_factory):
        with session_factory() as session:
            WatermarkStore(session).advance("patients", utc("2026-09-01T08:00:00"))
            session.commit()
        with session_factory() as session:
            mark = WatermarkStore(session).read()["patients"]
        assert mark.tzinfo is not None
        assert mark == utc("2026-09-01T08:00:00")


class TestAdvance:
    def test_moves_forward(self, db_session):
        store = WatermarkStore(db_session)
        assert store.advance("daily_entries", utc("2026-09-01T21:00:00")) == utc("2026-09-01T21:00:00")
        assert store.read()["daily_entries"] == utc("2026-09-01T21:00:00")

    def test_never_moves_backwards(self, db_session):
        store = WatermarkStore(db_session)
        store.advance("daily_entries", utc("2026-09-01T21:00:00"))
        assert store.advance("daily_entries", utc("2026-08-01T00:00:00")) == utc("2026-09-01T21:00:00")
        assert store.read()["daily_entries"] == utc("2026-09-01T21:00:00")

    def test_advance_many_is_per_table(self, db_session):
        store = WatermarkStore(db_session)
        store.advance("patients", utc("2026-09-10T00:00:00"))
        result = store.advance_many({
            "patients": utc("2026-09-05T00:00:00"),
            "assessments": utc("2026-09-06T00:00:00"),
        })
        assert result == {
            "patients": utc("2026-09-10T00:00:00"),
            "assessments": utc("2026-09-06T00:00:00"),
        }
        marks = store.read()
        assert marks["medications"] == EPOCH

    def test_unknown_table_rejected_before_write(self, db_session):
        store = WatermarkStore(db_session)
        with pytest.raises(KeyError):
            store.advance_many({"patients": utc("2026-09-05T00:00:00"), "users": utc("2026-09-05T00:00:00")})
        assert store.read()["patients"] == EPOCH

    def test_updated_at_moves_on_change(self, db_session):
        store = WatermarkStore(db_session)
        before = store.updated_at()
        store.advance("journal_entries", utc("2026-10-01T00:00:00"))
        assert store.updated_at() >= before


class TestReset:
    def test_reset_all_returns_to_epoch(self, db_session):
        store = WatermarkStore(db_session)
        store.advance_many({table: EPOCH + timedelta(days=20000) for table in WATERMARK_TABLES})
        store.reset_all()
        assert all(mark == EPOCH for mark in store.read().values())

    def test_reset_bumps_generation(self, db_session):
        store = WatermarkStore(db_session)
        before = store.generation()
        store.reset_all()
        assert store.generation() == before + 1


class TestAdvanceAfterReset:
    def test_stale_generation_does_not_undo_reset(self, session_factory):
        with session_factory() as runner:
            store = WatermarkStore(runner)
            generation = store.generation()
            runner.commit()

            with session_factory() as operator:
                WatermarkStore(operator).reset_all()
                operator.commit()

            result = store.advance_many({"daily_entries": utc("2026-09-20T21:00:00")}, generation=generation)
            runner.commit()

        assert result == {"daily_entries": EPOCH}
        with session_factory() as session:
            assert set(WatermarkStore(session).read().values()) == {EPOCH}

    def test_current_generation_advances(self, session_factory):
        with session_factory() as session:
            store = WatermarkStore(session)
            store.reset_all()
            generation = store.generation()
            store.advance("patients", utc("2026-09-02T08:00:00"), generation=generation)
            session.commit()
        with session_factory() as session:
            assert WatermarkStore(session).read()["patients"] == utc("2026-09-02T08:00:00")
