"""HIPAA Safe Harbour de-identification (45 CFR 164.514(b)(2)).

Pure transform from a raw clinical row to a de-identified row:
- the patient id becomes a keyed HMAC-SHA256 pseudonym
- date of birth becomes an age band relative to the export run time
- dates are truncated to year-month
- free text is scrubbed by the regex redactor
- only allow-listed fields are emitted; the caller's include list can
  narrow that set but never widen it

No I/O. The same Pseudonymizer is reused by the OMOP mappers so a patient
carries one pseudonym across both export targets.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from deid_export.exceptions import ConfigurationError
from deid_export.services.anonymizer import scrub_optional

# Field names for the 18 Safe Harbour identifier categories as they appear in
# the primary store. None of these may ever be emitted.
SAFE_HARBOUR_DENY: frozenset[str] = frozenset({
    # 1. names
    "first_name", "last_name", "preferred_name", "full_name",
    "emergency_contact_name",
    # 2. geographic subdivisions smaller than a state
    "address_line1", "address_line2", "street", "city", "county",
    "postal_code", "zip_code",
    # 3. dates (except year) directly related to the individual
    "date_of_birth", "entry_date", "admission_date", "discharge_date",
    "date_of_death",
    # 4-5. telephone and fax numbers
    "phone", "emergency_contact_phone", "fax",
    # 6. email addresses
    "email",
    # 7. social security numbers
    "ssn",
    # 8. medical record numbers
    "mrn",
    # 9. health plan beneficiary numbers
    "health_plan_id", "insurance_member_id",
    # 10. account numbers
    "account_number",
    # 11. certificate / license numbers
    "license_number",
    # 12. vehicle identifiers
    "vehicle_id", "license_plate",
    # 13. device identifiers and serial numbers
    "device_id", "push_token", "session_id",
    # 14. URLs
    "url", "photo_url", "avatar_url",
    # 15. IP addresses
    "ip_address",
    # 16. biometric identifiers
    "biometric_id", "voiceprint",
    # 17. full-face photographs
    "photo",
    # 18. any other unique identifying number or code
    "id", "patient_id", "external_id",
})

# Authoritative output schema, in column order
ALLOWED_FIELDS: tuple[str, ...] = (
    "pseudonym_id",
    "age_band",
    "gender",
    "state",
    "entry_date_month",
    "mood",
    "coping",
    "sleep_hours",
    "sleep_quality",
    "exercise_minutes",
    "anxiety_score",
    "mania_score",
    "anhedonia_score",
    "suicidal_ideation",
    "risk_level",
    "primary_concern",
)

# Values copied through unchanged (numeric scores and coarse categories)
_PASSTHROUGH_FIELDS = (
    "mood", "coping", "sleep_hours", "sleep_quality", "exercise_minutes",
    "anxiety_score", "mania_score", "anhedonia_score", "suicidal_ideation",
    "risk_level",
)

# (lower bound inclusive, label); checked top-down
_AGE_BANDS: tuple[tuple[int, str], ...] = (
    (65, "65+"),
    (55, "55-64"),
    (45, "45-54"),
    (35, "35-44"),
    (25, "25-34"),
    (18, "18-24"),
)


def resolve_fields(include_fields: Iterable[str] | None) -> list[str]:
    """Narrow the allow-list to the caller's include list.

    Unknown and deny-listed names are dropped silently. None means "all
    allowed fields". If nothing requested survives, only the pseudonym is
    kept so every row still identifies its (pseudonymous) subject.
    """
    if include_fields is None:
        return list(ALLOWED_FIELDS)
    requested = set(include_fields) - SAFE_HARBOUR_DENY
    fields = [f for f in ALLOWED_FIELDS if f in requested]
    return fields or ["pseudonym_id"]


class Pseudonymizer:
    """Keyed, deterministic, one-way patient pseudonyms (HMAC-SHA256)."""

    def __init__(self, secret: str | bytes):
        if not secret:
            raise ConfigurationError("PSEUDONYM_SECRET is not configured")
        self._key = secret.encode() if isinstance(secret, str) else secret

    def digest(self, *parts: str) -> bytes:
        message = "\x1f".join(parts).encode()
        return hmac.new(self._key, message, hashlib.sha256).digest()

    def pseudonym(self, patient_id: str) -> str:
        return "P" + self.digest("patient", str(patient_id)).hex()[:16].upper()

    def stable_int(self, *parts: str, bits: int = 60) -> int:
        """Deterministic positive integer for OMOP surrogate keys."""
        return int.from_bytes(self.digest(*parts)[:8], "big") >> (64 - bits)


def to_date(value: date | datetime | str | None) -> date | None:
    """Coerce a DB value (date, datetime or ISO string) to a date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def age_band(date_of_birth: date | datetime | str | None, as_of: date | datetime) -> str | None:
    """Bucket a birth date into an age band at the export run time."""
    dob = to_date(date_of_birth)
    if dob is None:
        return None
    ref = to_date(as_of)
    age = ref.year - dob.year - ((ref.month, ref.day) < (dob.month, dob.day))
    for lower, label in _AGE_BANDS:
        if age >= lower:
            return label
    return "<18"


def year_month(value: date | datetime | str | None) -> str | None:
    """Truncate a date to YYYY-MM."""
    d = to_date(value)
    return f"{d.year:04d}-{d.month:02d}" if d else None


def plain_value(value):
    if isinstance(value, Decimal):
        return float(value)
    return value


@dataclass
class SafeHarbourTransformer:
    """Row transformer bound to one export run.

    Args:
        pseudonymizer: Keyed pseudonym source.
        as_of: Export run time; age bands are computed relative to it.
        include_fields: Caller include list (narrowing only).
    """

    pseudonymizer: Pseudonymizer
    as_of: datetime
    include_fields: Sequence[str] | None = None

    def __post_init__(self):
        self.fields = resolve_fields(self.include_fields)

    def transform(self, row: dict) -> dict:
        state = row.get("state")
        candidate = {
            "pseudonym_id": self.pseudonymizer.pseudonym(row["patient_id"]),
            "age_band": age_band(row.get("date_of_birth"), self.as_of),
            "gender": row.get("gender"),
            "state": state.strip().upper() if isinstance(state, str) else None,
            "entry_date_month": year_month(row.get("entry_date")),
            "primary_concern": scrub_optional(row.get("primary_concern")),
        }
        for name in _PASSTHROUGH_FIELDS:
            candidate[name] = plain_value(row.get(name))
        return {name: candidate[name] for name in self.fields}

    def transform_all(self, rows: Iterable[dict]) -> list[dict]:
        return [self.transform(r) for r in rows]
