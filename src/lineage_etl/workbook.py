"""lineage_etl.workbook

Decode an xlsx byte buffer into plain sheets of row dicts.

Every sheet keeps its header row; every row maps each header to a value
(missing cells are an explicit None).  Date-formatted cells are turned back
into spreadsheet serial numbers so the archived payload holds exactly what
the workbook stores, and date interpretation stays in normalize.parse_date.
"""

from __future__ import annotations

import hashlib
import io
import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.datetime import to_excel


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class WorkbookParseError(Exception):
    """Raised when a payload cannot be decoded as a spreadsheet workbook."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class SheetData:
    sheet_name: str
    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ParsedWorkbook:
    sha256: str
    sheets: list[SheetData] = field(default_factory=list)

    def sheet(self, name: str) -> SheetData | None:
        for s in self.sheets:
            if s.sheet_name == name:
                return s
        return None

    @property
    def row_count(self) -> int:
        return sum(len(s.rows) for s in self.sheets)


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def content_sha256(payload: bytes) -> str:
    """Hex SHA-256 of the whole file; the SourceFile identity key."""
    return hashlib.sha256(payload).hexdigest()


def hash_row(row: dict[str, Any]) -> str:
    """Hex SHA-256 of the row's key-sorted JSON, for diffing between imports."""
    raw_payload = json.dumps(row, ensure_ascii=False, sort_keys=True, default=str)
    return hashlib.sha256(raw_payload.encode("utf-8")).hexdigest()


def is_blank_row(row: dict[str, Any]) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in row.values())


# ---------------------------------------------------------------------------
# Cell + header helpers
# ---------------------------------------------------------------------------

def _cell_value(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        serial = to_excel(value)
        return int(serial) if float(serial).is_integer() else serial
    if isinstance(value, timedelta):
        return value.total_seconds() / 86400
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _unique_headers(raw_headers: list[Any], width: int) -> list[str]:
    """Stringify headers; blanks become __EMPTY, __EMPTY_1, ...; repeats get _1, _2, ..."""
    headers: list[str] = []
    seen: dict[str, int] = {}
    for idx in range(width):
        raw = raw_headers[idx] if idx < len(raw_headers) else None
        name = str(_cell_value(raw)) if raw is not None and str(raw).strip() else "__EMPTY"
        if name in seen:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
            while candidate in seen:
                seen[name] += 1
                candidate = f"{name}_{seen[name]}"
            seen[candidate] = 0
            name = candidate
        else:
            seen[name] = 0
        headers.append(name)
    return headers


def _read_sheet(ws: Any) -> SheetData:
    raw_rows = [list(r) for r in ws.iter_rows(values_only=True)]
    # Drop trailing rows with no cells at all (openpyxl reports formatted-but-empty rows)
    while raw_rows and all(v is None for v in raw_rows[-1]):
        raw_rows.pop()
    if not raw_rows:
        return SheetData(sheet_name=ws.title)

    header_row, body = raw_rows[0], raw_rows[1:]
    width = max(len(r) for r in raw_rows)
    headers = _unique_headers(header_row, width)

    rows: list[dict[str, Any]] = []
    for raw in body:
        if all(v is None for v in raw):
            continue
        row = {
            h: (_cell_value(raw[idx]) if idx < len(raw) else None)
            for idx, h in enumerate(headers)
        }
        rows.append(row)
    return SheetData(sheet_name=ws.title, headers=headers, rows=rows)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_workbook(payload: bytes) -> ParsedWorkbook:
    """Decode xlsx bytes into a ParsedWorkbook (sheets in workbook order).

    Raises:
        WorkbookParseError: If the payload is empty or not a readable workbook.
    """
    if not payload:
        raise WorkbookParseError("empty workbook payload")
    sha256 = content_sha256(payload)
    try:
        wb = load_workbook(io.BytesIO(payload), read_only=True, data_only=True)
    except Exception as exc:
        raise WorkbookParseError(f"unreadable workbook: {exc}") from exc
    try:
        sheets = [_read_sheet(ws) for ws in wb.worksheets]
    except Exception as exc:
        raise WorkbookParseError(f"failed reading workbook sheets: {exc}") from exc
    finally:
        wb.close()
    return ParsedWorkbook(sha256=sha256, sheets=sheets)
