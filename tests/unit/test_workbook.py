"""Unit tests for lineage_etl.workbook."""

from __future__ import annotations

import hashlib
import io
from datetime import date

import pytest
from openpyxl import Workbook

from lineage_etl.workbook import (
    WorkbookParseError,
    content_sha256,
    hash_row,
    is_blank_row,
    parse_workbook,
)


def _xlsx(sheets: dict[str, list[list]]) -> bytes:
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


class TestParseWorkbook:
    def test_sheets_in_workbook_order(self):
        payload = _xlsx({
            "Second": [["A"], [1]],
            "First": [["B"], [2]],
        })
        parsed = parse_workbook(payload)
        assert [s.sheet_name for s in parsed.sheets] == ["Second", "First"]
        assert parsed.sha256 == content_sha256(payload)

    def test_rows_keyed_by_header(self):
        payload = _xlsx({"Loyd": [["Loyd ##", "Surname"], [1, "Loyd"], [2, "Smith"]]})
        sheet = parse_workbook(payload).sheet("Loyd")
        assert sheet.headers == ["Loyd ##", "Surname"]
        assert sheet.rows == [
            {"Loyd ##": 1, "Surname": "Loyd"},
            {"Loyd ##": 2, "Surname": "Smith"},
        ]

    def test_missing_cells_are_none(self):
        payload = _xlsx({"S": [["A", "B", "C"], [1]]})
        row = parse_workbook(payload).sheet("S").rows[0]
        assert row == {"A": 1, "B": None, "C": None}

    def test_blank_and_duplicate_headers(self):
        payload = _xlsx({"S": [["Name", None, "Name", None, "Name"], [1, 2, 3, 4, 5]]})
        sheet = parse_workbook(payload).sheet("S")
        assert sheet.headers == ["Name", "__EMPTY", "Name_1", "__EMPTY_1", "Name_2"]
        assert sheet.rows[0]["Name_2"] == 5

    def test_date_cells_become_serials(self):
        payload = _xlsx({"S": [["DoB"], [date(2022, 10, 19)]]})
        value = parse_workbook(payload).sheet("S").rows[0]["DoB"]
        assert value == 44853
        assert isinstance(value, int)

    def test_integral_float_collapses(self):
        payload = _xlsx({"S": [["N"], [12.0], [1.5]]})
        rows = parse_workbook(payload).sheet("S").rows
        assert rows[0]["N"] == 12 and isinstance(rows[0]["N"], int)
        assert rows[1]["N"] == 1.5

    def test_empty_rows_dropped(self):
        payload = _xlsx({"S": [["A"], [1], [None], [2], [None], [None]]})
        sheet = parse_workbook(payload).sheet("S")
        assert [r["A"] for r in sheet.rows] == [1, 2]

    def test_empty_sheet(self):
        payload = _xlsx({"Empty": [], "S": [["A"], [1]]})
        parsed = parse_workbook(payload)
        assert parsed.sheet("Empty").rows == []
        assert parsed.row_count == 1

    def test_unknown_sheet_lookup(self):
        parsed = parse_workbook(_xlsx({"S": [["A"], [1]]}))
        assert parsed.sheet("Nope") is None

    def test_garbage_bytes_raise(self):
        with pytest.raises(WorkbookParseError):
            parse_workbook(b"this is not a workbook")

    def test_empty_payload_raises(self):
        with pytest.raises(WorkbookParseError):
            parse_workbook(b"")


class TestHashing:
    def test_content_sha256(self):
        assert content_sha256(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_hash_row_ignores_key_order(self):
        assert hash_row({"a": 1, "b": "x"}) == hash_row({"b": "x", "a": 1})

    def test_hash_row_value_sensitive(self):
        assert hash_row({"a": 1}) != hash_row({"a": 2})

    def test_is_blank_row(self):
        assert is_blank_row({"a": None, "b": "  "})
        assert not is_blank_row({"a": None, "b": 0})
