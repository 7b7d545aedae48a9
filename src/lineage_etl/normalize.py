"""Normalization functions for family workbook ingestion.

Cell helpers accept any raw cell value (str, int, float, None) and return
the appropriate type or None.  parse_date is total: it never raises.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

# Spreadsheet serial day 0.  Serial 60 is the phantom 1900-02-29, so counting
# from 1899-12-30 gives the right calendar date for every serial after it.
EXCEL_EPOCH = date(1899, 12, 30)

MIN_YEAR = 1500
MAX_YEAR = 2100

# Formula-driven "Year of Death" columns evaluate to 1900 when no death is
# recorded.
DEFAULT_YEAR_ARTIFACT = 1900

_NULL_SENTINELS = frozenset({"", "0", "-", " - "})
_UNKNOWN_DATE_TEXT = frozenset({"unknown", "date unknown", "not known"})

_APPROX_PREFIX_RE = re.compile(r"^(?:(?:circa|ca|c)\.?\s*(?=\d)|~\s*)", re.IGNORECASE)
_DMY_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$")
_ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_YEAR_RE = re.compile(r"^(\d{4})$")
_YEAR_RANGE_RE = re.compile(r"^(\d{4})/\d{2,4}$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


def split_emails(value: Any) -> list[str]:
    """Split a ';' or ',' separated cell into unique normalized emails."""
    v = cell_str(value)
    if v is None:
        return []
    out: list[str] = []
    for part in re.split(r"[;,]", v):
        email = normalize_email(part)
        if email and email not in out:
            out.append(email)
    return out


# ---------------------------------------------------------------------------
# Rule 4: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: Any) -> str | None:
    """Return a trimmed phone string, or None when it has fewer than 7 digits.

    Family contact numbers are international and often typed with spaces,
    so only obviously broken values are dropped.  Spreadsheets also store
    numbers as numeric cells, which lose their leading zero; those are
    kept as typed.
    """
    v = cell_str(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if len(digits) < 7:
        return None
    return normalize_space(v)


# ---------------------------------------------------------------------------
# Rule 5: cell_str / cell_num / cell_id
# ---------------------------------------------------------------------------

def _as_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def cell_str(value: Any) -> str | None:
    """Return trimmed cell text, or None for blanks and placeholder dashes/zeros."""
    if value is None:
        return None
    v = _as_text(value).strip()
    return None if v in _NULL_SENTINELS else v


def cell_num(value: Any) -> int | float | None:
    """Parse a numeric cell.  Integral values come back as int."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = value
    else:
        v = trim(str(value))
        if v is None:
            return None
        try:
            n = float(v)
        except ValueError:
            return None
    if n != n:  # NaN
        return None
    if isinstance(n, float) and n.is_integer():
        return int(n)
    return n


def cell_id(value: Any) -> str | None:
    """Return a natural identifier as text: 12.0 -> '12', ' 18b ' -> '18b'."""
    if value is None:
        return None
    v = trim(_as_text(value))
    if v is None:
        return None
    return v


def is_numeric_id(value: str | None) -> bool:
    """True for identifiers made of digits (optionally signed), e.g. '107' or '-1'."""
    return bool(value) and re.fullmatch(r"-?\d+", value) is not None


# ---------------------------------------------------------------------------
# Rule 6: parse_date
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedDate:
    exact: date | None = None
    year: int | None = None
    month: int | None = None
    day: int | None = None
    text: str | None = None
    is_approx: bool = False

    @property
    def has_value(self) -> bool:
        """True when a structured date (exact or year) was recovered."""
        return self.exact is not None or self.year is not None


EMPTY_DATE = ParsedDate()


def is_valid_year(year: int | None) -> bool:
    return year is not None and MIN_YEAR <= year <= MAX_YEAR


def excel_serial_to_date(serial: float) -> date:
    """Convert a spreadsheet serial day number to a calendar date."""
    return EXCEL_EPOCH + timedelta(days=int(serial))


def _from_serial(serial: float, text: str | None, is_approx: bool) -> ParsedDate:
    try:
        d = excel_serial_to_date(serial)
    except OverflowError:
        return ParsedDate(text=text, is_approx=is_approx)
    if not is_valid_year(d.year):
        return ParsedDate(text=text, is_approx=is_approx)
    return ParsedDate(
        exact=d,
        year=d.year,
        month=d.month,
        day=d.day,
        text=text if text is not None else f"{d.day}/{d.month}/{d.year}",
        is_approx=is_approx,
    )


def _from_parts(year: int, month: int, day: int, text: str, is_approx: bool) -> ParsedDate | None:
    if not is_valid_year(year):
        return None
    try:
        exact = date(year, month, day)
    except ValueError:
        return None
    return ParsedDate(exact=exact, year=year, month=month, day=day, text=text, is_approx=is_approx)


def parse_date(value: Any) -> ParsedDate:
    """Normalize a workbook date cell.

    Accepts:
      - numeric serials (44853 -> 2022-10-19)
      - 'DD/MM/YYYY' and 'DD-MM-YYYY'
      - ISO 'YYYY-MM-DD'
      - bare years ('1842'), year ranges ('1798/99', first year wins)
      - approximation markers: leading 'c', 'c.', 'ca', '~'; trailing '?'
      - date/datetime objects

    Anything unrecognized keeps its original text with no structured date.
    Years outside MIN_YEAR..MAX_YEAR are never returned.
    """
    if value is None or isinstance(value, bool):
        return EMPTY_DATE

    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        if not is_valid_year(value.year):
            return ParsedDate(text=value.isoformat())
        return ParsedDate(
            exact=value, year=value.year, month=value.month, day=value.day,
            text=f"{value.day}/{value.month}/{value.year}",
        )

    if isinstance(value, (int, float)):
        if value != value:  # NaN
            return EMPTY_DATE
        if 1 < value < 200_000:
            return _from_serial(value, None, False)
        return ParsedDate(text=_as_text(value))

    raw = str(value).strip()
    if raw in _NULL_SENTINELS or raw.lower() in _UNKNOWN_DATE_TEXT:
        return EMPTY_DATE

    is_approx = bool(_APPROX_PREFIX_RE.match(raw)) or "?" in raw
    cleaned = _APPROX_PREFIX_RE.sub("", raw).rstrip("?").strip()

    # Serial numbers that arrived as text
    try:
        as_num = float(cleaned)
    except ValueError:
        as_num = None
    if as_num is not None and 2200 < as_num < 200_000:
        return _from_serial(as_num, raw, is_approx)

    m = _DMY_RE.match(cleaned)
    if m:
        parsed = _from_parts(int(m.group(3)), int(m.group(2)), int(m.group(1)), raw, is_approx)
        if parsed is not None:
            return parsed

    m = _ISO_RE.match(cleaned)
    if m:
        parsed = _from_parts(int(m.group(1)), int(m.group(2)), int(m.group(3)), raw, is_approx)
        if parsed is not None:
            return parsed

    m = _YEAR_RE.match(cleaned)
    if m:
        year = int(m.group(1))
        if is_valid_year(year):
            return ParsedDate(year=year, text=raw, is_approx=is_approx)

    m = _YEAR_RANGE_RE.match(cleaned)
    if m:
        year = int(m.group(1))
        if is_valid_year(year):
            return ParsedDate(year=year, text=raw, is_approx=True)

    return ParsedDate(text=raw, is_approx=is_approx)


# ---------------------------------------------------------------------------
# Rule 7: year columns
# ---------------------------------------------------------------------------

def parse_year(value: Any) -> int | None:
    """Return a plain 'Year of ...' column as an int inside the sane range."""
    n = cell_num(value)
    if n is None or not float(n).is_integer():
        return None
    year = int(n)
    return year if is_valid_year(year) else None


def resolve_death_year(year_value: Any, dod: ParsedDate) -> int | None:
    """Return the death year from a 'Year of Death' column, or None.

    A year equal to DEFAULT_YEAR_ARTIFACT is only trusted when the row also
    carries an actual death date value.
    """
    year = parse_year(year_value)
    if year is None:
        return None
    if year == DEFAULT_YEAR_ARTIFACT and not (dod.has_value or dod.text):
        return None
    return year


# ---------------------------------------------------------------------------
# Helper: build_display_name
# ---------------------------------------------------------------------------

def build_display_name(
    given_name: str | None,
    surname: str | None,
    external_id: str,
    birth_year: int | None,
    death_year: int | None,
) -> str:
    """Render 'Given (ID): birth–death', with '?' for unknown years.

    e.g. ('William', None, '1', 1690, 1750) -> 'William (1): 1690–1750'
    """
    name = given_name or surname or "Unknown"
    born = str(birth_year) if birth_year is not None else "?"
    died = str(death_year) if death_year is not None else "?"
    return f"{name} ({external_id}): {born}–{died}"


def first_word(value: str | None) -> str | None:
    """Return the first word of a name, ignoring any '(...)' annotation."""
    v = normalize_space(value)
    if v is None:
        return None
    head = trim(v.split("(", 1)[0])
    if head is None:
        return None
    return head.split(" ", 1)[0]


def display_name_key(value: str | None) -> str | None:
    """Lowercased alnum-only form of a name, used for duplicate flagging."""
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"\(.*?\)|:.*$", " ", v.lower())
    v = re.sub(r"[^a-z0-9]+", " ", v).strip()
    return v or None
