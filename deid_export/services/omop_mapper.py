"""Pure mappers from clinical source rows to OMOP CDM v5.4 table rows.

No I/O. Output follows the research export rules: person_source_value is
the keyed pseudonym, surrogate ids are keyed hashes of the source row (so
a row keeps its id across incremental runs), birth is reduced to the year
and every date is moved to the first day of its month.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime

from deid_export.services import omop_concepts as concepts
from deid_export.services.anonymizer import scrub_optional
from deid_export.services.deidentify import Pseudonymizer, plain_value, to_date

OMOP_COLUMNS: dict[str, tuple[str, ...]] = {
    "person": (
        "person_id", "gender_concept_id", "year_of_birth", "month_of_birth",
        "day_of_birth", "birth_datetime", "race_concept_id", "ethnicity_concept_id",
        "location_id", "provider_id", "care_site_id", "person_source_value",
        "gender_source_value", "gender_source_concept_id", "race_source_value",
        "race_source_concept_id", "ethnicity_source_value", "ethnicity_source_concept_id",
    ),
    "observation_period": (
        "observation_period_id", "person_id", "observation_period_start_date",
        "observation_period_end_date", "period_type_concept_id",
    ),
    "measurement": (
        "measurement_id", "person_id", "measurement_concept_id", "measurement_date",
        "measurement_datetime", "measurement_time", "measurement_type_concept_id",
        "operator_concept_id", "value_as_number", "value_as_concept_id", "unit_concept_id",
        "range_low", "range_high", "provider_id", "visit_occurrence_id", "visit_detail_id",
        "measurement_source_value", "measurement_source_concept_id", "unit_source_value",
        "unit_source_concept_id", "value_source_value", "measurement_event_id",
        "meas_event_field_concept_id",
    ),
    "observation": (
        "observation_id", "person_id", "observation_concept_id", "observation_date",
        "observation_datetime", "observation_type_concept_id", "value_as_number",
        "value_as_string", "value_as_concept_id", "qualifier_concept_id", "unit_concept_id",
        "provider_id", "visit_occurrence_id", "visit_detail_id", "observation_source_value",
        "observation_source_concept_id", "unit_source_value", "qualifier_source_value",
        "value_source_value", "observation_event_id", "obs_event_field_concept_id",
    ),
    "drug_exposure": (
        "drug_exposure_id", "person_id", "drug_concept_id", "drug_exposure_start_date",
        "drug_exposure_start_datetime", "drug_exposure_end_date", "drug_exposure_end_datetime",
        "verbatim_end_date", "drug_type_concept_id", "stop_reason", "refills", "quantity",
        "days_supply", "sig", "route_concept_id", "lot_number", "provider_id",
        "visit_occurrence_id", "visit_detail_id", "drug_source_value",
        "drug_source_concept_id", "route_source_value", "dose_unit_source_value",
    ),
    "condition_occurrence": (
        "condition_occurrence_id", "person_id", "condition_concept_id", "condition_start_date",
        "condition_start_datetime", "condition_end_date", "condition_end_datetime",
        "condition_type_concept_id", "condition_status_concept_id", "stop_reason",
        "provider_id", "visit_occurrence_id", "visit_detail_id", "condition_source_value",
        "condition_source_concept_id", "condition_status_source_value",
    ),
    "visit_occurrence": (
        "visit_occurrence_id", "person_id", "visit_concept_id", "visit_start_date",
        "visit_start_datetime", "visit_end_date", "visit_end_datetime",
        "visit_type_concept_id", "provider_id", "care_site_id", "visit_source_value",
        "visit_source_concept_id", "admitted_from_concept_id", "admitted_from_source_value",
        "discharged_to_concept_id", "discharged_to_source_value",
        "preceding_visit_occurrence_id",
    ),
    "device_exposure": (
        "device_exposure_id", "person_id", "device_concept_id", "device_exposure_start_date",
        "device_exposure_start_datetime", "device_exposure_end_date",
        "device_exposure_end_datetime", "device_type_concept_id", "unique_device_id",
        "production_id", "quantity", "provider_id", "visit_occurrence_id", "visit_detail_id",
        "device_source_value", "device_source_concept_id", "unit_concept_id",
        "unit_source_value", "unit_source_concept_id",
    ),
    "note": (
        "note_id", "person_id", "note_date", "note_datetime", "note_type_concept_id",
        "note_class_concept_id", "note_title", "note_text", "encoding_concept_id",
        "language_concept_id", "provider_id", "visit_occurrence_id", "visit_detail_id",
        "note_source_value", "note_event_id", "note_event_field_concept_id",
    ),
}

OMOP_TABLES: tuple[str, ...] = tuple(OMOP_COLUMNS)

DAILY_MEASUREMENT_FIELDS = (
    "mood", "sleep_hours", "exercise_minutes", "sleep_quality",
    "anxiety_score", "mania_score", "coping", "anhedonia_score",
    "stress_score", "cognitive_score", "appetite_score", "social_score",
)
DAILY_OBSERVATION_FIELDS = ("suicidal_ideation", "substance_use", "racing_thoughts", "decreased_sleep_need")
PASSIVE_FIELDS = ("step_count", "heart_rate_avg", "hrv_sdnn")

MAX_REPORTED_AGE = 89


def month_start(value: date | datetime | str | None) -> date | None:
    """Coarsen a date or timestamp to the first day of its month."""
    d = to_date(value)
    return d.replace(day=1) if d else None


def _date_str(value) -> str | None:
    d = month_start(value)
    return d.isoformat() if d else None


def _datetime_str(value) -> str | None:
    d = month_start(value)
    return f"{d.isoformat()}T00:00:00" if d else None


def _row(table: str, **values) -> dict:
    """Full-width row; *_concept_id columns default to 0, others to NULL."""
    row = {
        column: 0 if column.endswith("_concept_id") else None
        for column in OMOP_COLUMNS[table]
    }
    unknown = set(values) - set(row)
    if unknown:
        raise KeyError(f"Unknown {table} columns: {sorted(unknown)}")
    row.update(values)
    return row


@dataclass
class OmopMapper:
    """Mappers bound to one export run.

    Args:
        pseudonymizer: Same keyed source as the research exports.
        as_of: Run time; open-ended drug exposures end at its month.
    """

    pseudonymizer: Pseudonymizer
    as_of: datetime

    def person_id(self, patient_id) -> int:
        return self.pseudonymizer.stable_int("person", str(patient_id))

    def _id(self, table: str, source_id, field: str = "") -> int:
        return self.pseudonymizer.stable_int(table, str(source_id), field)

    def person(self, patient: dict) -> dict:
        dob = to_date(patient.get("date_of_birth"))
        gender = patient.get("gender")
        year = dob.year if dob else None
        if year is not None and self.as_of.year - year > MAX_REPORTED_AGE:
            # Ages over 89 are aggregated into one bucket
            year = self.as_of.year - MAX_REPORTED_AGE - 1
        return _row(
            "person",
            person_id=self.person_id(patient["patient_id"]),
            gender_concept_id=concepts.GENDER_CONCEPTS.get(gender or "other", 0),
            year_of_birth=year,
            person_source_value=self.pseudonymizer.pseudonym(patient["patient_id"]),
            gender_source_value=gender,
        )

    def observation_period(self, period: dict) -> dict:
        return _row(
            "observation_period",
            observation_period_id=self._id("observation_period", period["patient_id"]),
            person_id=self.person_id(period["patient_id"]),
            observation_period_start_date=_date_str(period["min_date"]),
            observation_period_end_date=_date_str(period["max_date"]),
            period_type_concept_id=concepts.PERIOD_FROM_EHR,
        )

    def _measurement(self, source_id, field, person_id, when, value, concept) -> dict:
        return _row(
            "measurement",
            measurement_id=self._id("measurement", source_id, field),
            person_id=person_id,
            measurement_concept_id=concept.concept_id,
            measurement_date=_date_str(when),
            measurement_datetime=_datetime_str(when),
            measurement_type_concept_id=concepts.PATIENT_SELF_REPORT,
            value_as_number=value,
            unit_concept_id=concept.unit_concept_id,
            measurement_source_value=concept.loinc_code or field,
            unit_source_value=concept.unit_source_value,
            value_source_value=str(value),
        )

    def daily_entry_measurements(self, entry: dict) -> list[dict]:
        person_id = self.person_id(entry["patient_id"])
        rows = []
        for field in DAILY_MEASUREMENT_FIELDS:
            value = plain_value(entry.get(field))
            if value is None:
                continue
            concept = concepts.MEASUREMENT_CONCEPTS[field]
            rows.append(self._measurement(entry["id"], field, person_id, entry["entry_date"], value, concept))
        return rows

    def daily_entry_observations(self, entry: dict) -> list[dict]:
        """Categorical symptoms; absent (0 / false) values are not emitted."""
        person_id = self.person_id(entry["patient_id"])
        rows = []
        for field in DAILY_OBSERVATION_FIELDS:
            value = entry.get(field)
            if value is None:
                continue
            number = int(value) if isinstance(value, bool) else plain_value(value)
            if number == 0:
                continue
            concept = concepts.OBSERVATION_CONCEPTS[field]
            rows.append(_row(
                "observation",
                observation_id=self._id("observation", entry["id"], field),
                person_id=person_id,
                observation_concept_id=concept.concept_id,
                observation_date=_date_str(entry["entry_date"]),
                observation_datetime=_datetime_str(entry["entry_date"]),
                observation_type_concept_id=concepts.PATIENT_SELF_REPORT,
                value_as_number=number,
                observation_source_value=concept.code or field,
                value_source_value=str(number),
            ))
        return rows

    def assessment_measurement(self, assessment: dict) -> dict:
        scale = assessment["scale"]
        known = concepts.ASSESSMENT_CONCEPTS.get(scale)
        concept = concepts.MeasurementConcept(
            known.concept_id if known else 0,
            known.code if known else "",
            known.name if known else scale,
            0,
            "{score}",
        )
        return self._measurement(
            assessment["id"],
            scale,
            self.person_id(assessment["patient_id"]),
            assessment["completed_at"],
            plain_value(assessment["score"]),
            concept,
        )

    def drug_exposure(self, medication: dict) -> dict:
        end = medication.get("discontinued_at") or self.as_of
        return _row(
            "drug_exposure",
            drug_exposure_id=self._id("drug_exposure", medication["id"]),
            person_id=self.person_id(medication["patient_id"]),
            drug_exposure_start_date=_date_str(medication["prescribed_at"]),
            drug_exposure_start_datetime=_datetime_str(medication["prescribed_at"]),
            drug_exposure_end_date=_date_str(end),
            drug_exposure_end_datetime=_datetime_str(end),
            verbatim_end_date=_date_str(medication.get("discontinued_at")),
            drug_type_concept_id=concepts.DRUG_FROM_PRESCRIPTION,
            sig=medication.get("dosage"),
            drug_source_value=medication.get("rxnorm_code") or medication["medication_name"],
            dose_unit_source_value=medication.get("dosage"),
        )

    def condition_occurrence(self, diagnosis: dict) -> dict:
        resolved = diagnosis.get("resolved_at")
        return _row(
            "condition_occurrence",
            condition_occurrence_id=self._id("condition_occurrence", diagnosis["id"]),
            person_id=self.person_id(diagnosis["patient_id"]),
            condition_concept_id=concepts.ICD10_CONDITION_CONCEPTS.get(diagnosis["icd10_code"], 0),
            condition_start_date=_date_str(diagnosis["diagnosed_at"]),
            condition_start_datetime=_datetime_str(diagnosis["diagnosed_at"]),
            condition_end_date=_date_str(resolved),
            condition_end_datetime=_datetime_str(resolved),
            condition_type_concept_id=concepts.CONDITION_FROM_EHR,
            condition_source_value=diagnosis["icd10_code"],
            condition_status_source_value="resolved" if resolved else "active",
        )

    def visit_occurrence(self, appointment: dict) -> dict:
        visit_type = appointment.get("appointment_type") or "other"
        end = appointment.get("ended_at") or appointment["scheduled_at"]
        return _row(
            "visit_occurrence",
            visit_occurrence_id=self._id("visit_occurrence", appointment["id"]),
            person_id=self.person_id(appointment["patient_id"]),
            visit_concept_id=concepts.VISIT_CONCEPTS.get(visit_type, 0),
            visit_start_date=_date_str(appointment["scheduled_at"]),
            visit_start_datetime=_datetime_str(appointment["scheduled_at"]),
            visit_end_date=_date_str(end),
            visit_end_datetime=_datetime_str(end),
            visit_type_concept_id=concepts.VISIT_FROM_EHR,
            visit_source_value=visit_type,
        )

    def passive_health_measurements(self, snapshot: dict) -> list[dict]:
        person_id = self.person_id(snapshot["patient_id"])
        rows = []
        for field in PASSIVE_FIELDS:
            value = plain_value(snapshot.get(field))
            if value is None:
                continue
            concept = concepts.PASSIVE_HEALTH_CONCEPTS[field]
            rows.append(self._measurement(snapshot["id"], field, person_id, snapshot["snapshot_date"], value, concept))
        return rows

    def device_exposure(self, snapshot: dict) -> dict:
        return _row(
            "device_exposure",
            device_exposure_id=self._id("device_exposure", snapshot["id"]),
            person_id=self.person_id(snapshot["patient_id"]),
            device_exposure_start_date=_date_str(snapshot["snapshot_date"]),
            device_exposure_start_datetime=_datetime_str(snapshot["snapshot_date"]),
            device_exposure_end_date=_date_str(snapshot["snapshot_date"]),
            device_exposure_end_datetime=_datetime_str(snapshot["snapshot_date"]),
            device_type_concept_id=concepts.DEVICE_INFERRED,
            device_source_value=snapshot.get("data_source") or "wearable",
        )

    def note(self, journal: dict) -> dict:
        return _row(
            "note",
            note_id=self._id("note", journal["id"]),
            person_id=self.person_id(journal["patient_id"]),
            note_date=_date_str(journal["created_at"]),
            note_datetime=_datetime_str(journal["created_at"]),
            note_type_concept_id=concepts.NOTE_FROM_EHR,
            note_title=scrub_optional(journal.get("title")),
            note_text=scrub_optional(journal.get("content")),
            language_concept_id=concepts.ENGLISH_LANGUAGE,
            note_source_value="patient_journal",
        )

    def map_source(self, table: str, rows: Iterable[dict]) -> dict[str, list[dict]]:
        """Map one source table's changed rows to the OMOP tables it feeds."""
        out: dict[str, list[dict]] = {}

        def add(omop_table: str, items: Iterable[dict]) -> None:
            out.setdefault(omop_table, []).extend(items)

        for row in rows:
            if table == "patients":
                add("person", [self.person(row)])
            elif table == "daily_entries":
                add("measurement", self.daily_entry_measurements(row))
                add("observation", self.daily_entry_observations(row))
            elif table == "assessments":
                add("measurement", [self.assessment_measurement(row)])
            elif table == "medications":
                add("drug_exposure", [self.drug_exposure(row)])
            elif table == "diagnoses":
                add("condition_occurrence", [self.condition_occurrence(row)])
            elif table == "appointments":
                add("visit_occurrence", [self.visit_occurrence(row)])
            elif table == "passive_health":
                add("measurement", self.passive_health_measurements(row))
                add("device_exposure", [self.device_exposure(row)])
            elif table == "journal_entries":
                add("note", [self.note(row)])
            else:
                raise KeyError(f"No OMOP mapping for source table {table!r}")
        return out
