"""lineage_etl.cli

Command-line entry point for importing a family workbook.

Usage:
    lineage-etl --xlsx-path data/family.xlsx --db-dsn postgresql://...
    lineage-etl --xlsx-path data/family.xlsx --dry-run
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from lineage_etl.config import ImportSettings, SettingsValidationError, load_settings
from lineage_etl.gender import GenderNamesValidationError, default_gender_lookup, load_gender_lookup
from lineage_etl.run import (
    ImportAlreadyRunningError,
    build_import_report,
    preview_import,
    run_import,
    write_run_report,
)
from lineage_etl.workbook import WorkbookParseError


@click.command()
@click.option("--xlsx-path", required=True, type=click.Path(exists=True, dir_okay=False), help="Workbook to import")
@click.option("--db-dsn", envvar="LINEAGE_DB_DSN", default=None, help="PostgreSQL DSN (env LINEAGE_DB_DSN)")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False), help="Import settings YAML")
@click.option("--gender-names", default=None, type=click.Path(exists=True, dir_okay=False), help="Gender name-list YAML")
@click.option("--user-id", default=None, help="User id recorded on the source file and run")
@click.option("--dry-run", is_flag=True, default=False, help="Parse, extract and validate without writing to the DB")
@click.option("--report-path", default=None, type=click.Path(), help="Write a JSON run report here")
@click.option("--run-label", default=None, help="Override label for log correlation")
@click.option("--verbose", "-v", is_flag=True, default=False)
def main(
    xlsx_path: str,
    db_dsn: str | None,
    config_path: str | None,
    gender_names: str | None,
    user_id: str | None,
    dry_run: bool,
    report_path: str | None,
    run_label: str | None,
    verbose: bool,
) -> None:
    """Import a family workbook into the lineage database."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_label = run_label or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_label}] Starting workbook import (dry_run={dry_run})")

    try:
        settings = load_settings(Path(config_path)) if config_path else ImportSettings()
        lookup = load_gender_lookup(Path(gender_names)) if gender_names else default_gender_lookup()
    except (SettingsValidationError, GenderNamesValidationError) as exc:
        click.echo(f"[{run_label}] FATAL: invalid config: {exc}", err=True)
        sys.exit(1)

    path = Path(xlsx_path)
    payload = path.read_bytes()

    if dry_run:
        try:
            canonical, issues = preview_import(payload, settings, lookup)
        except WorkbookParseError as exc:
            click.echo(f"[{run_label}] FATAL: {exc}", err=True)
            sys.exit(1)
        counts = canonical.counts()
        summary = {
            "import_run_id": None,
            "people_upserted": counts["people"],
            "events_upserted": counts["events"],
            "relationships_upserted": counts["parent_child"],
            "partnerships_upserted": counts["partnerships"],
            "contacts_upserted": counts["contacts"],
            "issues_count": len(issues),
            "extract_stats": dict(canonical.stats),
        }
        click.echo(build_import_report(summary, dry_run=True))
        click.echo(f"[{run_label}] DRY RUN — nothing written.")
    else:
        if not db_dsn:
            click.echo(f"[{run_label}] FATAL: --db-dsn (or LINEAGE_DB_DSN) is required", err=True)
            sys.exit(1)
        try:
            with psycopg.connect(db_dsn, autocommit=True) as conn:
                result = run_import(conn, payload, path.name, user_id, settings, lookup)
        except ImportAlreadyRunningError as exc:
            click.echo(f"[{run_label}] FATAL: {exc}", err=True)
            sys.exit(1)
        except (WorkbookParseError, psycopg.Error) as exc:
            click.echo(f"[{run_label}] FATAL: import failed: {exc}", err=True)
            sys.exit(1)
        summary = result.to_dict()
        click.echo(build_import_report(summary))
        click.echo(f"[{run_label}] Completed import run {result.import_run_id}.")

    if report_path:
        written = write_run_report(
            run_label, started_at, dry_run, str(path), summary, Path(report_path),
        )
        click.echo(f"[{run_label}] Report written to {written}")


if __name__ == "__main__":
    main()
