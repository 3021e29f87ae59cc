from deid_export.models.base import Base
from deid_export.models.cohort import CohortDefinition
from deid_export.models.lifecycle import ExportStatus
from deid_export.models.omop_export import (
    EPOCH,
    WATERMARK_TABLES,
    OmopExportRun,
    OmopExportWatermark,
    OmopTrigger,
)
from deid_export.models.research_export import DEIDENTIFICATION_METHOD, ExportFormat, ResearchExport

__all__ = [
    "Base",
    "CohortDefinition",
    "ExportStatus",
    "ExportFormat",
    "DEIDENTIFICATION_METHOD",
    "ResearchExport",
    "OmopExportRun",
    "OmopExportWatermark",
    "OmopTrigger",
    "EPOCH",
    "WATERMARK_TABLES",
]
