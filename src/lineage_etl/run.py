"""lineage_etl.run

Import run controller: one workbook upload -> one import_run.

Pipeline:
  1.  Single-writer guard (recent RUNNING run -> ImportAlreadyRunningError)
  2.  Upsert source_file by content hash
  3.  Insert import_run (RUNNING)
  4.  Parse workbook
  5.  Archive sheets + rows
  6.  Extract canonical candidates
  7.  Upsert people -> events -> parent_child -> partnerships -> contacts
  8.  Validate + replace import_issue rows
  9.  Mark COMPLETED with summary JSON, write activity row

Any exception after step 3 marks the run FAILED with {"error": str(exc)}
and is re-raised.  Writes committed before the failure are kept.

The connection must be in autocommit mode: every step commits its own
transactions.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import psycopg

from lineage_etl.archive import archive_sheets, upsert_source_file
from lineage_etl.config import ImportSettings
from lineage_etl.extract import CanonicalData, extract_canonical
from lineage_etl.gender import GenderLookup
from lineage_etl.upsert import (
    UpsertCounters,
    upsert_contacts,
    upsert_events,
    upsert_parent_child,
    upsert_partnerships,
    upsert_people,
)
from lineage_etl.validate import ImportIssueRecord, validate_canonical, write_issues
from lineage_etl.workbook import content_sha256, parse_workbook

log = logging.getLogger(__name__)

PIPELINE_VERSION = "1.0.0"

RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportAlreadyRunningError(Exception):
    """Raised when another import run is still RUNNING inside the guard window."""


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

@dataclass
class ImportSummary:
    import_run_id: str | None
    source_file_id: str | None
    sheets_processed: int = 0
    raw_rows_stored: int = 0
    people_upserted: int = 0
    events_upserted: int = 0
    relationships_upserted: int = 0
    partnerships_upserted: int = 0
    contacts_upserted: int = 0
    issues_count: int = 0
    extract_stats: dict[str, int] = field(default_factory=dict)
    counters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Run ledger helpers
# ---------------------------------------------------------------------------

def find_running_import(conn: Any, guard_minutes: int) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM import_run
        WHERE status = 'RUNNING'
          AND started_at > now() - make_interval(mins => %s)
        ORDER BY started_at DESC
        LIMIT 1
        """,
        (guard_minutes,),
    ).fetchone()
    return str(row[0]) if row else None


def start_import_run(conn: Any, source_file_id: str, user_id: str | None) -> str:
    row = conn.execute(
        """
        INSERT INTO import_run (source_file_id, status, app_version, triggered_by_user_id)
        VALUES (%s, %s, %s, %s)
        RETURNING id
        """,
        (source_file_id, RUNNING, PIPELINE_VERSION, user_id),
    ).fetchone()
    return str(row[0])


def finish_import_run(conn: Any, import_run_id: str, status: str, summary: dict[str, Any]) -> None:
    conn.execute(
        """
        UPDATE import_run
        SET status = %s, finished_at = now(), summary = %s
        WHERE id = %s
        """,
        (status, json.dumps(summary, default=str), import_run_id),
    )


def insert_activity(conn: Any, user_id: str | None, message: str, meta: dict[str, Any]) -> None:
    conn.execute(
        """
        INSERT INTO activity (type, actor_user_id, message, meta)
        VALUES ('IMPORT_RUN', %s, %s, %s)
        """,
        (user_id, message, json.dumps(meta, default=str)),
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def run_import(
    conn: Any,
    payload: bytes,
    original_filename: str,
    user_id: str | None = None,
    settings: ImportSettings | None = None,
    gender_lookup: GenderLookup | None = None,
) -> ImportSummary:
    """Import one workbook end to end; see the module docstring for the steps.

    Raises:
        ImportAlreadyRunningError: Before any run row is created.
        WorkbookParseError, psycopg.Error: After marking the run FAILED.
    """
    settings = settings or ImportSettings()
    batch = settings.batch_size
    timeout = settings.statement_timeout_ms

    running = find_running_import(conn, settings.running_guard_minutes)
    if running is not None:
        raise ImportAlreadyRunningError(f"import run {running} is still RUNNING")

    sha256 = content_sha256(payload)
    with conn.transaction():
        source_file_id = upsert_source_file(conn, sha256, original_filename, user_id)
        import_run_id = start_import_run(conn, source_file_id, user_id)
    log.info("import run %s started for %s (sha256=%s)", import_run_id, original_filename, sha256)

    counters = UpsertCounters()
    try:
        workbook = parse_workbook(payload)
        raw_rows = archive_sheets(conn, import_run_id, workbook.sheets, batch, counters, timeout)

        canonical = extract_canonical(workbook.sheets, gender_lookup, settings.source_system)
        log.info("extracted %s", canonical.counts())

        id_map = upsert_people(conn, canonical.people, batch, counters, timeout)
        event_ids = upsert_events(conn, canonical.events, id_map, batch, counters, timeout)
        upsert_parent_child(conn, canonical.parent_child, id_map, batch, counters, timeout)
        upsert_partnerships(conn, canonical.partnerships, id_map, event_ids, batch, counters, timeout)
        upsert_contacts(conn, canonical.contacts, id_map, batch, counters, timeout)

        issues = validate_canonical(
            canonical, id_map, max_lifespan=settings.max_lifespan_years,
        )
        counters.issues_written = write_issues(conn, import_run_id, issues, batch)

        summary = ImportSummary(
            import_run_id=import_run_id,
            source_file_id=source_file_id,
            sheets_processed=len(workbook.sheets),
            raw_rows_stored=raw_rows,
            people_upserted=counters.people_created + counters.people_updated,
            events_upserted=counters.events_created + counters.events_updated,
            relationships_upserted=counters.parent_child_inserted + counters.parent_child_existing,
            partnerships_upserted=counters.partnerships_upserted,
            contacts_upserted=counters.contacts_upserted,
            issues_count=len(issues),
            extract_stats=dict(canonical.stats),
            counters=counters.to_dict(),
        )
        with conn.transaction():
            finish_import_run(conn, import_run_id, COMPLETED, summary.to_dict())
            insert_activity(
                conn, user_id,
                f"Import completed: {summary.people_upserted} people, "
                f"{summary.events_upserted} events, "
                f"{summary.relationships_upserted} relationships",
                summary.to_dict(),
            )
    except Exception as exc:
        log.error("import run %s failed: %s", import_run_id, exc)
        try:
            with conn.transaction():
                finish_import_run(conn, import_run_id, FAILED, {"error": str(exc)})
        except psycopg.Error as mark_exc:
            log.error("could not mark import run %s FAILED: %s", import_run_id, mark_exc)
        raise

    if counters.batch_failures:
        log.warning("import run %s completed with %d failed batches", import_run_id, counters.batch_failures)
    log.info("import run %s completed", import_run_id)
    return summary


def preview_import(
    payload: bytes,
    settings: ImportSettings | None = None,
    gender_lookup: GenderLookup | None = None,
) -> tuple[CanonicalData, list[ImportIssueRecord]]:
    """Parse, extract and validate in memory only (no DB writes)."""
    settings = settings or ImportSettings()
    workbook = parse_workbook(payload)
    canonical = extract_canonical(workbook.sheets, gender_lookup, settings.source_system)
    issues = validate_canonical(canonical, {}, max_lifespan=settings.max_lifespan_years)
    return canonical, issues


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def build_import_report(summary: dict[str, Any], dry_run: bool = False) -> str:
    """Human-readable run summary for the CLI."""
    lines = [
        "=== workbook import report ===",
        f"  dry_run:                {dry_run}",
        f"  import_run_id:          {summary.get('import_run_id')}",
        f"  sheets_processed:       {summary.get('sheets_processed', 0)}",
        f"  raw_rows_stored:        {summary.get('raw_rows_stored', 0)}",
        f"  people_upserted:        {summary.get('people_upserted', 0)}",
        f"  events_upserted:        {summary.get('events_upserted', 0)}",
        f"  relationships_upserted: {summary.get('relationships_upserted', 0)}",
        f"  partnerships_upserted:  {summary.get('partnerships_upserted', 0)}",
        f"  contacts_upserted:      {summary.get('contacts_upserted', 0)}",
        f"  issues_count:           {summary.get('issues_count', 0)}",
    ]
    warnings = (summary.get("counters") or {}).get("warnings") or []
    if warnings:
        lines.append(f"  warnings ({len(warnings)}):")
        lines += [f"    {w}" for w in warnings[:10]]
    return "\n".join(lines)


def write_run_report(
    run_label: str,
    started_at: str,
    dry_run: bool,
    xlsx_path: str,
    summary: dict[str, Any],
    report_path: Path | None = None,
) -> Path:
    report = {
        "run_label": run_label,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        "xlsx_path": xlsx_path,
        "pipeline_version": PIPELINE_VERSION,
        "summary": summary,
    }
    path = report_path or Path(f"./artifacts/reports/{run_label}.json")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report, indent=2, default=str))
    return path
