"""Tests for the Safe Harbour row transformer."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from deid_export.exceptions import ConfigurationError
from deid_export.services.deidentify import (
    ALLOWED_FIELDS,
    SAFE_HARBOUR_DENY,
    Pseudonymizer,
    SafeHarbourTransformer,
    age_band,
    resolve_fields,
    year_month,
)

AS_OF = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _raw_row(**overrides) -> dict:
    row = {
        "patient_id": "7c1e0c52-3f55-4a8e-9d0b-1d2f3a4b5c6d",
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane.doe@example.com",
        "phone": "+1 415 555 0199",
        "postal_code": "94110",
        "city": "San Francisco",
        "date_of_birth": date(1990, 6, 15),
        "gender": "female",
        "state": " ca ",
        "risk_level": "moderate",
        "primary_concern": "Panic attacks since 2024-01-03, email jane@example.com",
        "entry_date": date(2026, 9, 14),
        "mood": 6,
        "coping": 5,
        "sleep_hours": Decimal("7.5"),
        "sleep_quality": 3,
        "exercise_minutes": 30,
        "anxiety_score": 2,
        "mania_score": 0,
        "anhedonia_score": 1,
        "suicidal_ideation": 0,
    }
    row.update(overrides)
    return row


class TestFieldLists:
    def test_allow_and_deny_are_disjoint(self):
        assert SAFE_HARBOUR_DENY.isdisjoint(ALLOWED_FIELDS)

    def test_none_means_all_allowed(self):
        assert resolve_fields(None) == list(ALLOWED_FIELDS)

    def test_include_narrows_and_keeps_allow_order(self):
        assert resolve_fields(["mood", "age_band"]) == ["age_band", "mood"]

    def test_include_cannot_widen(self):
        assert resolve_fields(["mood", "email", "date_of_birth", "no_such_field"]) == ["mood"]

    def test_only_denied_falls_back_to_pseudonym(self):
        assert resolve_fields(["email", "phone"]) == ["pseudonym_id"]
        assert resolve_fields([]) == ["pseudonym_id"]


class TestPseudonymizer:
    def test_requires_secret(self):
        with pytest.raises(ConfigurationError):
            Pseudonymizer("")

    def test_deterministic(self):
        a = Pseudonymizer("k1").pseudonym("patient-1")
        b = Pseudonymizer("k1").pseudonym("patient-1")
        assert a == b
        assert a.startswith("P")
        assert len(a) == 17

    def test_keyed(self):
        assert Pseudonymizer("k1").pseudonym("patient-1") != Pseudonymizer("k2").pseudonym("patient-1")

    def test_does_not_contain_source_id(self):
        patient_id = "7c1e0c52-3f55-4a8e-9d0b-1d2f3a4b5c6d"
        assert patient_id not in Pseudonymizer("k1").pseudonym(patient_id)
        assert Pseudonymizer("k1").pseudonym(patient_id) != patient_id

    def test_stable_int_positive_and_bounded(self):
        value = Pseudonymizer("k1").stable_int("measurement", "row-1", "mood")
        assert 0 < value < 2 ** 60
        assert value == Pseudonymizer("k1").stable_int("measurement", "row-1", "mood")
        assert value != Pseudonymizer("k1").stable_int("measurement", "row-1", "coping")


class TestAgeBand:
    @pytest.mark.parametrize(
        "dob,expected",
        [
            (date(2008, 10, 18), "18-24"),
            (date(2008, 10, 19), "<18"),
            (date(2001, 10, 19), "18-24"),
            (date(2001, 10, 18), "25-34"),
            (date(1990, 6, 15), "35-44"),
            (date(1961, 10, 18), "65+"),
            (date(1920, 1, 1), "65+"),
        ],
    )
    def test_bands_at_boundaries(self, dob, expected):
        assert age_band(dob, AS_OF) == expected

    def test_accepts_iso_string(self):
        assert age_band("1990-06-15", AS_OF) == "35-44"

    def test_missing_dob(self):
        assert age_band(None, AS_OF) is None


class TestYearMonth:
    def test_date(self):
        assert year_month(date(2026, 3, 15)) == "2026-03"

    def test_datetime_and_string(self):
        assert year_month(datetime(2026, 11, 2, 23, 59)) == "2026-11"
        assert year_month("2026-01-31") == "2026-01"

    def test_none(self):
        assert year_month(None) is None


class TestSafeHarbourTransformer:
    def test_output_columns_are_allow_list(self, pseudonymizer):
        out = SafeHarbourTransformer(pseudonymizer, AS_OF).transform(_raw_row())
        assert list(out) == list(ALLOWED_FIELDS)
        assert not set(out) & SAFE_HARBOUR_DENY

    def test_identifiers_removed(self, pseudonymizer):
        row = _raw_row()
        out = SafeHarbourTransformer(pseudonymizer, AS_OF).transform(row)
        values = {str(v) for v in out.values()}
        for identifier in ("Jane", "Doe", "jane.doe@example.com", "94110", "San Francisco", row["patient_id"]):
            assert identifier not in values
        assert "1990-06-15" not in values
        assert "2026-09-14" not in values

    def test_coarsened_values(self, pseudonymizer):
        out = SafeHarbourTransformer(pseudonymizer, AS_OF).transform(_raw_row())
        assert out["pseudonym_id"] == pseudonymizer.pseudonym("7c1e0c52-3f55-4a8e-9d0b-1d2f3a4b5c6d")
        assert out["age_band"] == "35-44"
        assert out["entry_date_month"] == "2026-09"
        assert out["state"] == "CA"

    def test_numeric_passthrough(self, pseudonymizer):
        out = SafeHarbourTransformer(pseudonymizer, AS_OF).transform(_raw_row())
        assert out["mood"] == 6
        assert out["sleep_hours"] == 7.5
        assert isinstance(out["sleep_hours"], float)
        assert out["suicidal_ideation"] == 0

    def test_primary_concern_scrubbed(self, pseudonymizer):
        out = SafeHarbourTransformer(pseudonymizer, AS_OF).transform(_raw_row())
        assert "jane@example.com" not in out["primary_concern"]
        assert "2024-01-03" not in out["primary_concern"]
        assert out["primary_concern"].startswith("Panic attacks since [DATE]")

    def test_missing_values_are_null(self, pseudonymizer):
        out = SafeHarbourTransformer(pseudonymizer, AS_OF).transform(
            _raw_row(state=None, date_of_birth=None, primary_concern=None, mood=None)
        )
        assert out["state"] is None
        assert out["age_band"] is None
        assert out["primary_concern"] is None
        assert out["mood"] is None

    def test_include_fields_narrow_output(self, pseudonymizer):
        transformer = SafeHarbourTransformer(pseudonymizer, AS_OF, ["mood", "email", "entry_date_month"])
        assert transformer.fields == ["entry_date_month", "mood"]
        assert transformer.transform(_raw_row()) == {"entry_date_month": "2026-09", "mood": 6}

    def test_same_patient_same_pseudonym(self, pseudonymizer):
        transformer = SafeHarbourTransformer(pseudonymizer, AS_OF, ["pseudonym_id"])
        rows = transformer.transform_all([_raw_row(), _raw_row(entry_date=date(2026, 9, 15))])
        assert rows[0] == rows[1]
