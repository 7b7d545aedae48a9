"""Integration test fixtures.

Applies the lineage migrations against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

import io
from pathlib import Path

import psycopg
import pytest
from openpyxl import Workbook
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_import_ledger.sql",
    PROJECT_ROOT / "migrations" / "0002_canonical_graph.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return an autocommit psycopg connection with schema applied.

    The import pipeline commits chunk by chunk, so the connection stays in
    autocommit mode.  Function scope gives each test a fresh schema.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Workbook builder
# ---------------------------------------------------------------------------

def build_xlsx(sheets: dict[str, list[list]]) -> bytes:
    """Build an in-memory xlsx: {sheet name: [header row, data rows...]}."""
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.fixture
def xlsx_builder():
    return build_xlsx
