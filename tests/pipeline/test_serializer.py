"""Tests for export serialization (CSV, NDJSON, TSV)."""

import csv
import io
import json
from datetime import date

import pytest

from deid_export.services.serializer import serialize


class TestCsv:
    def test_header_and_rows(self):
        artifact = serialize([{"a": 1, "b": "x"}, {"a": 2, "b": "y"}], "csv")
        assert artifact.payload == b"a,b\r\n1,x\r\n2,y\r\n"
        assert artifact.content_type == "text/csv"
        assert artifact.extension == "csv"
        assert artifact.size_bytes == len(artifact.payload)

    def test_quotes_special_characters(self):
        rows = [{"a": 'he said "hi", ok', "b": "line1\nline2"}]
        payload = serialize(rows, "csv").payload.decode()
        assert payload == 'a,b\r\n"he said ""hi"", ok","line1\nline2"\r\n'
        parsed = list(csv.DictReader(io.StringIO(payload, newline="")))
        assert parsed == [{"a": 'he said "hi", ok', "b": "line1\nline2"}]

    def test_null_is_empty(self):
        assert serialize([{"a": None, "b": 0}], "csv").payload == b"a,b\r\n,0\r\n"

    def test_fields_fix_column_order(self):
        payload = serialize([{"b": 2, "a": 1}], "csv", ["a", "b"]).payload
        assert payload == b"a,b\r\n1,2\r\n"

    def test_empty_with_fields_is_header_only(self):
        assert serialize([], "csv", ["pseudonym_id", "mood"]).payload == b"pseudonym_id,mood\r\n"

    def test_empty_without_fields(self):
        assert serialize([], "csv").payload == b""


class TestNdjson:
    def test_one_object_per_line(self):
        rows = [{"a": 1, "when": date(2026, 9, 1)}, {"a": 2, "when": None}]
        artifact = serialize(rows, "ndjson")
        lines = artifact.payload.decode().split("\n")
        assert [json.loads(line) for line in lines] == [
            {"a": 1, "when": "2026-09-01"},
            {"a": 2, "when": None},
        ]
        assert artifact.content_type == "application/x-ndjson"
        assert artifact.extension == "ndjson"

    def test_unicode_kept(self):
        assert "Zoë" in serialize([{"n": "Zoë"}], "ndjson").payload.decode()

    def test_empty(self):
        assert serialize([], "ndjson").payload == b""


class TestTsv:
    def test_flattens_tabs_and_newlines(self):
        payload = serialize([{"a": "x\ty", "b": "one\r\ntwo", "c": None}], "tsv").payload
        assert payload == b"a\tb\tc\nx y\tone two\t\n"

    def test_header_only(self):
        artifact = serialize([], "tsv", ["person_id", "year_of_birth"])
        assert artifact.payload == b"person_id\tyear_of_birth\n"
        assert artifact.content_type == "text/tab-separated-values"


class TestUnsupported:
    def test_rejects_unknown_format(self):
        with pytest.raises(ValueError):
            serialize([{"a": 1}], "xlsx")
