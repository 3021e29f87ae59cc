"""High-water mark store for incremental OMOP extraction.

Wraps the omop_export_hwm singleton row. Every write locks the row
(SELECT ... FOR UPDATE) and runs inside the caller's transaction; the
caller commits. Async callers go through AsyncSession.run_sync.

Rows with a change timestamp <= the stored mark have been exported by an
earlier run. Marks only move forward, except through reset_all(), which
also bumps reset_generation so an in-flight run cannot undo the reset.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from deid_export.models.omop_export import EPOCH, WATERMARK_TABLES, OmopExportWatermark

logger = structlog.get_logger()

SINGLETON_ID = 1


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite) as UTC so marks compare consistently."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _column(table: str) -> str:
    if table not in WATERMARK_TABLES:
        raise KeyError(f"Unknown watermark table: {table!r}")
    return f"{table}_hwm"


class WatermarkStore:
    """read / advance / reset_all over the singleton watermark row."""

    def __init__(self, session: Session):
        self.session = session

    def _row(self, lock: bool) -> OmopExportWatermark:
        query = (
            select(OmopExportWatermark)
            .where(OmopExportWatermark.id == SINGLETON_ID)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        row = self.session.execute(query).scalar_one_or_none()
        if row is None:
            # Normally seeded by the migration
            row = OmopExportWatermark(id=SINGLETON_ID, reset_generation=0, updated_at=datetime.now(timezone.utc))
            for table in WATERMARK_TABLES:
                setattr(row, _column(table), EPOCH)
            self.session.add(row)
            self.session.flush()
        return row

    def read(self) -> dict[str, datetime]:
        row = self._row(lock=False)
        return {table: as_utc(getattr(row, _column(table))) for table in WATERMARK_TABLES}

    def generation(self) -> int:
        """Reset counter; a run snapshots it alongside read()."""
        return self._row(lock=False).reset_generation

    def advance(self, table: str, candidate: datetime, generation: int | None = None) -> datetime:
        """Move one table's mark forward to candidate; never backwards.

        Returns:
            The stored mark after the call.
        """
        return self.advance_many({table: candidate}, generation=generation)[table]

    def advance_many(
        self, candidates: Mapping[str, datetime], generation: int | None = None
    ) -> dict[str, datetime]:
        """Advance several marks under one row lock.

        Each stored value becomes max(stored, candidate). When generation is
        given and a reset_all() has happened since the caller read it, nothing
        moves: the candidates were computed against marks that no longer exist.
        """
        for table in candidates:
            _column(table)
        row = self._row(lock=True)
        stored = {table: as_utc(getattr(row, _column(table))) for table in candidates}
        if generation is not None and row.reset_generation != generation:
            logger.warning(
                "watermarks_advance_skipped_after_reset",
                read_generation=generation,
                current_generation=row.reset_generation,
            )
            return stored
        result: dict[str, datetime] = {}
        moved: dict[str, str] = {}
        for table, candidate in candidates.items():
            current = stored[table]
            new = max(current, as_utc(candidate))
            if new != current:
                setattr(row, _column(table), new)
                moved[table] = new.isoformat()
            result[table] = new
        if moved:
            row.updated_at = datetime.now(timezone.utc)
            self.session.flush()
            logger.info("watermarks_advanced", tables=moved)
        return result

    def reset_all(self) -> None:
        """Set every mark to the epoch; the next run re-exports all history."""
        row = self._row(lock=True)
        for table in WATERMARK_TABLES:
            setattr(row, _column(table), EPOCH)
        row.reset_generation += 1
        row.updated_at = datetime.now(timezone.utc)
        self.session.flush()
        logger.warning("watermarks_reset", tables=len(WATERMARK_TABLES), generation=row.reset_generation)

    def updated_at(self) -> datetime:
        return as_utc(self._row(lock=False).updated_at)
