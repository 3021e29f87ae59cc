"""Serialize de-identified rows into an upload payload.

CSV is RFC 4180 (CRLF line endings, fields quoted when they contain the
delimiter, a quote or a line break). NDJSON is one JSON object per line.
TSV is the OMOP bulk-load format: tabs and newlines inside values are
flattened to spaces, NULL is the empty string.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True)
class SerializedArtifact:
    payload: bytes
    content_type: str
    extension: str

    @property
    def size_bytes(self) -> int:
        return len(self.payload)


def _header(rows: Sequence[dict], fields: Sequence[str] | None) -> list[str]:
    if fields is not None:
        return list(fields)
    return list(rows[0].keys()) if rows else []


def to_csv(rows: Sequence[dict], fields: Sequence[str] | None = None) -> bytes:
    header = _header(rows, fields)
    if not header:
        return b""
    buf = io.StringIO(newline="")
    writer = csv.DictWriter(buf, fieldnames=header, lineterminator="\r\n", extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({k: ("" if v is None else v) for k, v in row.items()})
    return buf.getvalue().encode("utf-8")


def to_ndjson(rows: Sequence[dict]) -> bytes:
    return "\n".join(json.dumps(r, ensure_ascii=False, default=str) for r in rows).encode("utf-8")


def _tsv_value(value) -> str:
    if value is None:
        return ""
    return str(value).replace("\t", " ").replace("\r", "").replace("\n", " ")


def to_tsv(rows: Sequence[dict], fields: Sequence[str] | None = None) -> bytes:
    header = _header(rows, fields)
    if not header:
        return b""
    lines = ["\t".join(header)]
    lines.extend("\t".join(_tsv_value(r.get(k)) for k in header) for r in rows)
    return ("\n".join(lines) + "\n").encode("utf-8")


def serialize(rows: Sequence[dict], format: str, fields: Sequence[str] | None = None) -> SerializedArtifact:
    """Serialize rows in the requested format.

    Args:
        rows: De-identified records.
        format: "csv", "ndjson" or "tsv".
        fields: Column order; gives a header-only CSV/TSV when rows is empty.

    Returns:
        SerializedArtifact with payload bytes, content type and file extension.
    """
    if format == "csv":
        return SerializedArtifact(to_csv(rows, fields), "text/csv", "csv")
    if format == "ndjson":
        return SerializedArtifact(to_ndjson(rows), "application/x-ndjson", "ndjson")
    if format == "tsv":
        return SerializedArtifact(to_tsv(rows, fields), "text/tab-separated-values", "tsv")
    raise ValueError(f"Unsupported export format: {format!r}")
