"""Free-text PHI scrubber.

Structured fields are de-identified by allow-list in deidentify.py. The few
free-text values that survive it (primary concern, shared journal notes)
still go through this regex pass, which redacts:
- Email addresses and URLs (including URLs carrying credentials)
- IP addresses (v4 and v6)
- Social security numbers and record numbers (MRN / account / member id)
- Phone and fax numbers
- Full dates (ISO and US forms)
- File paths with usernames, device/push tokens, @mentions

Names and street addresses in prose are not reliably detectable with
patterns; note export is limited to entries the patient shared with the
care team.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()


@dataclass
class ScrubResult:
    """Result of scrubbing one free-text value."""

    text: str
    redactions: list[dict] = field(default_factory=list)

    @property
    def redaction_count(self) -> int:
        return len(self.redactions)


# --- Compiled regex patterns ---

_URL_WITH_AUTH_RE = re.compile(
    r'[a-zA-Z][a-zA-Z0-9+.-]*://[^:\s/]+:[^@\s]+@[^\s]+'
)

_URL_RE = re.compile(
    r'\b(?:https?://|www\.)[^\s<>"]+'
)

_EMAIL_RE = re.compile(
    r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'
)

_IPV4_RE = re.compile(
    r'\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b'
)

_IPV6_RE = re.compile(
    r'\b(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}\b'
)

_SSN_RE = re.compile(
    r'\b\d{3}-\d{2}-\d{4}\b'
)

_RECORD_NUMBER_RE = re.compile(
    r'\b(?:MRN|medical record|account|acct|member id|policy)\s*(?:no\.?|number|#)?\s*[:#]?\s*'
    r'(?=[A-Z0-9-]*\d)[A-Z0-9-]{4,}\b',
    re.IGNORECASE,
)

_ISO_DATE_RE = re.compile(
    r'\b(?:19|20)\d{2}-(?:0[1-9]|1[0-2])-(?:0[1-9]|[12]\d|3[01])\b'
)

_US_DATE_RE = re.compile(
    r'\b(?:0?[1-9]|1[0-2])/(?:0?[1-9]|[12]\d|3[01])/(?:19|20)?\d{2}\b'
)

_PHONE_RE = re.compile(
    r'(?<!\d)'
    r'(?:\+?\d{1,3}[-.\s]?)?'
    r'(?:\(?\d{2,4}\)?[-.\s]?)'
    r'\d{3,4}[-.\s]?\d{3,4}'
    r'(?!\d)'
)

_FILE_PATH_RE = re.compile(
    r'(?:/(?:Users|home)/[A-Za-z0-9._-]+)'
    r'(?:/[A-Za-z0-9._/-]*)?'
)

_TOKEN_RE = re.compile(
    r'\b(?:'
    r'ExponentPushToken\[[A-Za-z0-9_-]+\]'   # Expo push token
    r'|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}'  # UUID / device id
    r')'
)

_MENTION_RE = re.compile(
    r'(?<![\w.])@[A-Za-z0-9_]{2,32}\b'
)


# --- Pattern registry ---

_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    # URL_AUTH must run before EMAIL and URL to avoid partial matches
    ("URL_AUTH", _URL_WITH_AUTH_RE, "[URL]"),
    ("EMAIL", _EMAIL_RE, "[EMAIL]"),
    ("URL", _URL_RE, "[URL]"),
    ("IPV4", _IPV4_RE, "[IP]"),
    ("IPV6", _IPV6_RE, "[IP]"),
    ("SSN", _SSN_RE, "[SSN]"),
    ("RECORD_NUMBER", _RECORD_NUMBER_RE, "[RECORD_NUMBER]"),
    ("TOKEN", _TOKEN_RE, "[DEVICE_ID]"),
    # Dates before PHONE: 2024-03-05 would otherwise look like a number run
    ("DATE", _ISO_DATE_RE, "[DATE]"),
    ("DATE", _US_DATE_RE, "[DATE]"),
    ("PHONE", _PHONE_RE, "[PHONE]"),
    ("FILE_PATH", _FILE_PATH_RE, "[PATH]"),
    ("MENTION", _MENTION_RE, "[USER]"),
]


def scrub_text(text: str) -> ScrubResult:
    """Redact identifiers from free text.

    Args:
        text: Raw text potentially containing PHI.

    Returns:
        ScrubResult with redacted text and the list of redactions. The
        redaction list holds types and offsets only, never the matched text.
    """
    redactions: list[dict] = []
    result = text

    for pii_type, pattern, replacement in _PATTERNS:
        matches = list(pattern.finditer(result))
        if not matches:
            continue

        # Process matches in reverse order to preserve positions
        for match in reversed(matches):
            original = match.group()

            # Short digit runs are scores and doses, not phone numbers
            if pii_type == "PHONE" and len(re.sub(r"\D", "", original)) < 7:
                continue

            redactions.append({
                "type": pii_type,
                "replacement": replacement,
                "start": match.start(),
                "end": match.end(),
            })
            result = result[:match.start()] + replacement + result[match.end():]

    if redactions:
        logger.debug(
            "phi_redacted",
            count=len(redactions),
            types=sorted({r["type"] for r in redactions}),
        )

    return ScrubResult(text=result, redactions=redactions)


def scrub_optional(text: str | None) -> str | None:
    """Scrub a nullable column value, passing None through."""
    if text is None:
        return None
    return scrub_text(text).text
