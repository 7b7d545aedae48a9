"""lineage_etl.archive

Raw archival store: source_file, import_sheet and import_row records.

Every sheet and row of the workbook is stored verbatim before any
interpretation happens, including sheets no extractor understands.
import_row is append-only; each run writes its own copy keyed by
(import_sheet_id, row_index).  Any DB error here propagates and fails the run.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from lineage_etl.upsert import DEFAULT_STATEMENT_TIMEOUT_MS, UpsertCounters, chunked, set_statement_timeout
from lineage_etl.workbook import SheetData, hash_row, is_blank_row

log = logging.getLogger(__name__)


def upsert_source_file(
    conn: Any,
    sha256: str,
    original_filename: str,
    user_id: str | None = None,
) -> str:
    """Upsert source_file by content hash; return its id.

    Re-uploading identical bytes reuses the existing row.
    """
    row = conn.execute(
        """
        INSERT INTO source_file (sha256, original_filename, uploaded_by_user_id)
        VALUES (%s, %s, %s)
        ON CONFLICT (sha256) DO UPDATE SET
            original_filename = EXCLUDED.original_filename
        RETURNING id
        """,
        (sha256, original_filename, user_id),
    ).fetchone()
    return str(row[0])


def insert_import_sheet(conn: Any, import_run_id: str, sheet: SheetData, sheet_index: int) -> str:
    row = conn.execute(
        """
        INSERT INTO import_sheet (import_run_id, sheet_name, sheet_index, row_count, headers)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (import_run_id, sheet.sheet_name, sheet_index, len(sheet.rows), json.dumps(sheet.headers)),
    ).fetchone()
    return str(row[0])


def _row_params(import_sheet_id: str, row_index: int, row: dict[str, Any]) -> tuple:
    return (
        import_sheet_id,
        row_index,
        json.dumps(row, ensure_ascii=False, default=str),
        hash_row(row),
        is_blank_row(row),
    )


def archive_sheets(
    conn: Any,
    import_run_id: str,
    sheets: list[SheetData],
    batch_size: int,
    counters: UpsertCounters,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
) -> int:
    """Store every sheet and row for this run; return the number of rows stored.

    One import_sheet per tab in workbook order, then its rows in chunks of
    batch_size, one transaction per chunk.
    """
    stored = 0
    for sheet_index, sheet in enumerate(sheets):
        with conn.transaction():
            import_sheet_id = insert_import_sheet(conn, import_run_id, sheet, sheet_index)
        counters.sheets_archived += 1

        indexed = list(enumerate(sheet.rows))
        for chunk in chunked(indexed, batch_size):
            with conn.transaction():
                set_statement_timeout(conn, statement_timeout_ms)
                with conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO import_row
                            (import_sheet_id, row_index, row_json, row_hash, is_blank)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (import_sheet_id, row_index) DO NOTHING
                        """,
                        [_row_params(import_sheet_id, idx, row) for idx, row in chunk],
                    )
            stored += len(chunk)
            counters.raw_rows_inserted += len(chunk)

        log.info("archived sheet %r: %d rows", sheet.sheet_name, len(sheet.rows))
    return stored
