import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from deid_export.models.base import Base, JSONType, TimestampMixin
from deid_export.models.lifecycle import ExportLifecycleMixin


class ExportFormat(str, enum.Enum):
    CSV = "csv"
    NDJSON = "ndjson"


DEIDENTIFICATION_METHOD = "safe_harbour_18"


class ResearchExport(Base, TimestampMixin, ExportLifecycleMixin):
    __tablename__ = "research_exports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    organisation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    cohort_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("cohort_definitions.id", ondelete="SET NULL")
    )

    # Snapshot of filters at request time (cohort filters may change later)
    filters: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    format: Mapped[str] = mapped_column(String(20), default=ExportFormat.NDJSON.value, nullable=False)
    include_fields: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Set together on completion
    record_count: Mapped[int | None] = mapped_column(Integer)
    file_url: Mapped[str | None] = mapped_column(Text)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger)

    deidentification_method: Mapped[str] = mapped_column(
        String(40), default=DEIDENTIFICATION_METHOD, nullable=False
    )
    deidentified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
