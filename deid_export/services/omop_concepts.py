"""Static OMOP CDM v5.4 concept mappings (Athena / OHDSI vocabulary ids).

A concept id of 0 means "no matching standard concept"; the source code is
still carried in the *_source_value column.
"""

from __future__ import annotations

from typing import NamedTuple

GENDER_CONCEPTS: dict[str, int] = {
    "male": 8507,
    "female": 8532,
    "other": 0,
}

# Provenance of each row
PATIENT_SELF_REPORT = 44818702
PERIOD_FROM_EHR = 44814724
CONDITION_FROM_EHR = 32020
DRUG_FROM_PRESCRIPTION = 38000177
VISIT_FROM_EHR = 44818518
NOTE_FROM_EHR = 44814645
DEVICE_INFERRED = 44818707

ENGLISH_LANGUAGE = 4180186


class MeasurementConcept(NamedTuple):
    concept_id: int
    loinc_code: str
    name: str
    unit_concept_id: int
    unit_source_value: str


class SourceConcept(NamedTuple):
    concept_id: int
    code: str
    name: str


# daily_entries numeric fields -> MEASUREMENT
MEASUREMENT_CONCEPTS: dict[str, MeasurementConcept] = {
    "mood": MeasurementConcept(40758889, "72828-7", "Mood score", 0, "{score}"),
    "sleep_hours": MeasurementConcept(3024171, "65968-7", "Sleep duration", 8505, "h"),
    "exercise_minutes": MeasurementConcept(40762499, "55423-8", "Exercise duration", 8550, "min"),
    "sleep_quality": MeasurementConcept(0, "", "Sleep quality score", 0, "{score}"),
    "anxiety_score": MeasurementConcept(0, "", "Anxiety score", 0, "{score}"),
    "mania_score": MeasurementConcept(0, "", "Mania score", 0, "{score}"),
    "coping": MeasurementConcept(0, "", "Coping score", 0, "{score}"),
    "anhedonia_score": MeasurementConcept(0, "", "Anhedonia score", 0, "{score}"),
    "stress_score": MeasurementConcept(0, "", "Stress score", 0, "{score}"),
    "cognitive_score": MeasurementConcept(0, "", "Cognitive function score", 0, "{score}"),
    "appetite_score": MeasurementConcept(0, "", "Appetite score", 0, "{score}"),
    "social_score": MeasurementConcept(0, "", "Social engagement score", 0, "{score}"),
}

# validated_assessments.scale -> MEASUREMENT
ASSESSMENT_CONCEPTS: dict[str, SourceConcept] = {
    "PHQ-9": SourceConcept(40758882, "44249-1", "PHQ-9 total score"),
    "GAD-7": SourceConcept(40766345, "69737-5", "GAD-7 total score"),
    "ISI": SourceConcept(0, "89794-0", "Insomnia Severity Index total score"),
    "C-SSRS": SourceConcept(0, "89213-1", "C-SSRS Screener total score"),
    "ASRM": SourceConcept(0, "", "Altman Self-Rating Mania Scale total score"),
    "WHODAS": SourceConcept(0, "", "WHODAS 2.0 total score"),
}

# daily_entries categorical fields -> OBSERVATION (SNOMED codes)
OBSERVATION_CONCEPTS: dict[str, SourceConcept] = {
    "suicidal_ideation": SourceConcept(4150489, "6471006", "Suicidal ideation"),
    "substance_use": SourceConcept(4041306, "", "Substance use"),
    "racing_thoughts": SourceConcept(4326432, "71978007", "Racing thoughts"),
    "decreased_sleep_need": SourceConcept(0, "", "Decreased need for sleep"),
}

# appointments.appointment_type -> VISIT_OCCURRENCE
VISIT_CONCEPTS: dict[str, int] = {
    "telehealth": 5083,
    "in_person": 9202,
    "phone": 5083,
    "other": 0,
}

# ICD-10-CM -> standard SNOMED condition concept
ICD10_CONDITION_CONCEPTS: dict[str, int] = {
    "F32.0": 4152280,   # MDD, single episode, mild
    "F32.1": 4153428,   # MDD, single episode, moderate
    "F32.2": 4152011,   # MDD, single episode, severe
    "F32.9": 440383,    # MDD, single episode, unspecified
    "F33.0": 4282096,   # MDD, recurrent, mild
    "F33.1": 4283893,   # MDD, recurrent, moderate
    "F33.2": 4281438,   # MDD, recurrent, severe
    "F33.9": 4152011,   # MDD, recurrent, unspecified
    "F41.0": 436676,    # Panic disorder
    "F41.1": 441542,    # Generalized anxiety disorder
    "F41.9": 441542,    # Anxiety disorder, unspecified
    "F31.0": 436665,    # Bipolar, hypomanic
    "F31.1": 436665,
    "F31.2": 436665,
    "F31.9": 436665,
    "F43.10": 4245975,  # PTSD
    "F43.11": 4245975,
    "F43.12": 4245975,
    "F42.2": 435783,    # OCD
    "F42.9": 435783,
    "F50.00": 436073,   # Anorexia nervosa
    "F50.01": 436073,
    "F50.02": 436073,
    "F50.2": 440704,    # Bulimia nervosa
    "F50.81": 4068838,  # Binge eating disorder
    "F51.01": 436962,   # Primary insomnia
    "F51.02": 436962,
}

# passive_health_snapshots -> MEASUREMENT
PASSIVE_HEALTH_CONCEPTS: dict[str, MeasurementConcept] = {
    "step_count": MeasurementConcept(40771067, "55423-8", "Step count", 8510, "steps"),
    "heart_rate_avg": MeasurementConcept(3027018, "8867-4", "Heart rate", 8541, "bpm"),
    "hrv_sdnn": MeasurementConcept(0, "", "Heart rate variability SDNN", 8529, "ms"),
}
