"""Extraction queries against the primary clinical store.

The clinical tables (patients, daily_entries, ...) belong to the CRUD side
of the platform and are read here with plain SQL. Research queries are
always scoped by organisation id; the remaining predicates are advisory
filters chosen by the requester.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import Date, DateTime, bindparam, text
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import TextClause

from deid_export.models.omop_export import WATERMARK_TABLES
from deid_export.services.watermarks import as_utc

logger = structlog.get_logger()


# --- Research exports ---


@dataclass(frozen=True)
class ResearchFilters:
    active_only: bool = True
    risk_levels: tuple[str, ...] | None = None
    period_start: date | None = None
    period_end: date | None = None
    diagnoses: tuple[str, ...] | None = None
    age_min: int | None = None
    age_max: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping | None) -> ResearchFilters:
        """Build from the JSON snapshot stored on the export record."""
        data = data or {}

        def _date(key):
            value = data.get(key)
            return date.fromisoformat(str(value)[:10]) if value else None

        def _tuple(key):
            value = data.get(key)
            return tuple(value) if value else None

        return cls(
            active_only=data.get("active_only", True) is not False,
            risk_levels=_tuple("risk_levels"),
            period_start=_date("period_start"),
            period_end=_date("period_end"),
            diagnoses=_tuple("diagnoses"),
            age_min=data.get("age_min"),
            age_max=data.get("age_max"),
        )


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def research_window(filters: ResearchFilters, today: date, default_days: int) -> tuple[date, date]:
    """Resolve the export time window; defaults to the trailing default_days."""
    start = filters.period_start or today - timedelta(days=default_days)
    end = filters.period_end or today
    return start, end


_RESEARCH_COLUMNS = """
    p.id AS patient_id, p.date_of_birth, p.gender, p.state,
    p.risk_level, p.primary_concern,
    de.entry_date,
    de.mood, de.coping, de.sleep_hours, de.sleep_quality,
    de.exercise_minutes, de.anxiety_score, de.mania_score,
    de.anhedonia_score, de.suicidal_ideation,
    de.updated_at
"""


def build_research_query(
    organisation_id: uuid.UUID | str,
    filters: ResearchFilters,
    *,
    today: date,
    default_days: int,
    count: bool = False,
) -> TextClause:
    """Build the research extraction (or row-count) query.

    Args:
        organisation_id: Tenant scope. Always applied.
        filters: Advisory predicates from the request.
        today: Reference day for the default window and age limits.
        default_days: Trailing window length when no period is given.
        count: Return COUNT(*) instead of rows (trigger-time estimate).
    """
    start, end = research_window(filters, today, default_days)
    where = [
        "p.organisation_id = :organisation_id",
        "p.is_active = TRUE",
        "de.submitted_at IS NOT NULL",
        "de.entry_date >= :period_start",
        "de.entry_date <= :period_end",
    ]
    params: dict = {"organisation_id": str(organisation_id)}
    binds = [
        bindparam("period_start", value=start, type_=Date),
        bindparam("period_end", value=end, type_=Date),
    ]

    if filters.active_only:
        where.append("p.status = 'active'")
    if filters.risk_levels:
        where.append("p.risk_level IN :risk_levels")
        binds.append(bindparam("risk_levels", value=list(filters.risk_levels), expanding=True))
    if filters.diagnoses:
        where.append(
            "EXISTS (SELECT 1 FROM patient_diagnoses pd"
            " WHERE pd.patient_id = p.id AND pd.icd10_code IN :diagnoses)"
        )
        binds.append(bindparam("diagnoses", value=list(filters.diagnoses), expanding=True))
    if filters.age_min is not None:
        where.append("p.date_of_birth <= :born_on_or_before")
        binds.append(bindparam("born_on_or_before", value=_years_before(today, filters.age_min), type_=Date))
    if filters.age_max is not None:
        where.append("p.date_of_birth > :born_after")
        binds.append(bindparam("born_after", value=_years_before(today, filters.age_max + 1), type_=Date))

    select_clause = "COUNT(*) AS row_count" if count else _RESEARCH_COLUMNS
    sql = (
        f"SELECT {select_clause}\n"
        "FROM patients p\n"
        "JOIN daily_entries de ON de.patient_id = p.id\n"
        "WHERE " + "\n  AND ".join(where)
    )
    if not count:
        # Ascending change order: a partial run never skips an earlier row
        sql += "\nORDER BY de.entry_date ASC, de.updated_at ASC, de.id ASC"
    return text(sql).bindparams(*binds, **params)


def fetch_research_rows(
    session: Session,
    organisation_id: uuid.UUID | str,
    filters: ResearchFilters,
    *,
    today: date,
    default_days: int,
) -> list[dict]:
    query = build_research_query(organisation_id, filters, today=today, default_days=default_days)
    rows = [dict(r) for r in session.execute(query).mappings().all()]
    logger.info("research_rows_extracted", organisation_id=str(organisation_id), rows=len(rows))
    return rows


# --- OMOP incremental extraction ---

# Active patients who granted research consent
_CONSENTED_PATIENTS = """
    SELECT cp.id FROM patients cp
    JOIN consent_records cr
      ON cr.patient_id = cp.id
     AND cr.consent_type = 'data_research'
     AND cr.granted = TRUE
    WHERE cp.is_active = TRUE
"""

OMOP_SOURCE_QUERIES: dict[str, str] = {
    "patients": """
        SELECT p.id AS patient_id, p.date_of_birth, p.gender, p.state, p.updated_at
        FROM patients p
        WHERE p.id IN ({consented}) AND p.updated_at > :since
        ORDER BY p.updated_at ASC, p.id ASC
    """,
    "daily_entries": """
        SELECT de.id, de.patient_id, de.entry_date,
               de.mood, de.sleep_hours, de.exercise_minutes, de.sleep_quality,
               de.anxiety_score, de.mania_score, de.coping, de.anhedonia_score,
               de.stress_score, de.cognitive_score, de.appetite_score, de.social_score,
               de.suicidal_ideation, de.substance_use, de.racing_thoughts,
               de.decreased_sleep_need, de.updated_at
        FROM daily_entries de
        WHERE de.patient_id IN ({consented})
          AND de.submitted_at IS NOT NULL
          AND de.updated_at > :since
        ORDER BY de.updated_at ASC, de.id ASC
    """,
    "assessments": """
        SELECT va.id, va.patient_id, va.scale, va.score, va.completed_at, va.updated_at
        FROM validated_assessments va
        WHERE va.patient_id IN ({consented}) AND va.updated_at > :since
        ORDER BY va.updated_at ASC, va.id ASC
    """,
    "medications": """
        SELECT pm.id, pm.patient_id, pm.medication_name, pm.rxnorm_code, pm.dosage,
               pm.prescribed_at, pm.discontinued_at, pm.updated_at
        FROM patient_medications pm
        WHERE pm.patient_id IN ({consented}) AND pm.updated_at > :since
        ORDER BY pm.updated_at ASC, pm.id ASC
    """,
    "diagnoses": """
        SELECT pd.id, pd.patient_id, pd.icd10_code, pd.diagnosis_name,
               pd.diagnosed_at, pd.resolved_at, pd.updated_at
        FROM patient_diagnoses pd
        WHERE pd.patient_id IN ({consented}) AND pd.updated_at > :since
        ORDER BY pd.updated_at ASC, pd.id ASC
    """,
    "appointments": """
        SELECT a.id, a.patient_id, a.appointment_type, a.scheduled_at, a.ended_at, a.updated_at
        FROM appointments a
        WHERE a.patient_id IN ({consented}) AND a.updated_at > :since
        ORDER BY a.updated_at ASC, a.id ASC
    """,
    "passive_health": """
        SELECT ph.id, ph.patient_id, ph.snapshot_date, ph.step_count,
               ph.heart_rate_avg, ph.hrv_sdnn, ph.data_source, ph.updated_at
        FROM passive_health_snapshots ph
        WHERE ph.patient_id IN ({consented}) AND ph.updated_at > :since
        ORDER BY ph.updated_at ASC, ph.id ASC
    """,
    "journal_entries": """
        SELECT je.id, je.patient_id, je.title, je.content, je.created_at, je.updated_at
        FROM journal_entries je
        WHERE je.patient_id IN ({consented})
          AND je.shared_with_care_team = TRUE
          AND je.updated_at > :since
        ORDER BY je.updated_at ASC, je.id ASC
    """,
}

_OBSERVATION_PERIODS = f"""
    SELECT de.patient_id, MIN(de.entry_date) AS min_date, MAX(de.entry_date) AS max_date
    FROM daily_entries de
    WHERE de.patient_id IN ({_CONSENTED_PATIENTS})
      AND de.submitted_at IS NOT NULL
    GROUP BY de.patient_id
"""


def to_datetime(value: datetime | str) -> datetime:
    """Coerce a timestamp column (native or SQLite text) to aware UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return as_utc(value)


def fetch_changed_rows(session: Session, table: str, since: datetime) -> list[dict]:
    """Rows of one source table changed after the table's high-water mark."""
    if table not in WATERMARK_TABLES:
        raise KeyError(f"Unknown source table: {table!r}")
    query = text(OMOP_SOURCE_QUERIES[table].format(consented=_CONSENTED_PATIENTS)).bindparams(
        bindparam("since", value=since, type_=DateTime(timezone=True)),
    )
    rows = [dict(r) for r in session.execute(query).mappings().all()]
    logger.info("omop_rows_extracted", table=table, since=since.isoformat(), rows=len(rows))
    return rows


def fetch_observation_periods(session: Session) -> list[dict]:
    """First and last submitted entry date per consented patient."""
    return [dict(r) for r in session.execute(text(_OBSERVATION_PERIODS)).mappings().all()]
