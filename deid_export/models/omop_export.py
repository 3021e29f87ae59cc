import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from deid_export.models.base import Base, JSONType, TimestampMixin
from deid_export.models.lifecycle import ExportLifecycleMixin

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Source tables tracked by the high-water mark row, in extraction order
WATERMARK_TABLES: tuple[str, ...] = (
    "patients",
    "daily_entries",
    "assessments",
    "medications",
    "diagnoses",
    "appointments",
    "passive_health",
    "journal_entries",
)


class OmopTrigger(str, enum.Enum):
    NIGHTLY = "nightly"
    MANUAL = "manual"


class OmopExportRun(Base, TimestampMixin, ExportLifecycleMixin):
    __tablename__ = "omop_export_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    triggered_by: Mapped[str] = mapped_column(String(20), default=OmopTrigger.MANUAL.value, nullable=False)
    output_mode: Mapped[str] = mapped_column(String(20), default="tsv_upload", nullable=False)
    full_refresh: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # {"person": 146, "measurement": 4500, ...}
    record_counts: Mapped[dict | None] = mapped_column(JSONType)
    # {"person": "https://...", ...}
    file_urls: Mapped[dict | None] = mapped_column(JSONType)


class OmopExportWatermark(Base):
    """Singleton row of per-table high-water marks (id is always 1)."""

    __tablename__ = "omop_export_hwm"
    __table_args__ = (CheckConstraint("id = 1", name="ck_omop_export_hwm_singleton"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    patients_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    daily_entries_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    assessments_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    medications_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    diagnoses_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    appointments_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    passive_health_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    journal_entries_hwm: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=EPOCH, nullable=False)
    # Bumped by every reset; runs that started before a reset may not advance
    reset_generation: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
