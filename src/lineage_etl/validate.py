"""lineage_etl.validate

Post-load data-quality pass over the extracted graph.

Rules (placeholder spouses are exempt from all of them):
  MISSING_DOB         WARNING  no birth event, or one with neither exact date nor year
  PARTIAL_DOD         INFO     death year known, exact death date not
  MISSING_GENDER      WARNING  gender UNKNOWN
  FUTURE_BIRTH        ERROR    birth year after the current year
  FUTURE_DEATH        ERROR    death year after the current year
  DEATH_BEFORE_BIRTH  ERROR    death year before birth year
  IMPOSSIBLE_LIFESPAN ERROR    death year - birth year > max_lifespan
  PARENT_AFTER_CHILD  ERROR    per parent edge: parent born in or after the child's birth year
  POSSIBLE_DUPLICATE  INFO     same normalized display name and birth year under different keys

Issues are flags only; nothing here modifies the graph.
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from lineage_etl.extract import CanonicalData, EventCandidate, PersonCandidate
from lineage_etl.gender import UNKNOWN
from lineage_etl.normalize import display_name_key
from lineage_etl.upsert import chunked

ERROR = "ERROR"
WARNING = "WARNING"
INFO = "INFO"

ENTITY_PERSON = "PERSON"


@dataclass
class ImportIssueRecord:
    severity: str
    code: str
    message: str
    entity_type: str | None = None
    entity_id: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


def _subject_events(canonical: CanonicalData, type_: str) -> dict[str, EventCandidate]:
    return {
        e.person_key: e
        for e in canonical.events
        if e.type == type_ and e.role == "subject"
    }


def _issue(
    severity: str,
    code: str,
    message: str,
    person: PersonCandidate,
    id_map: dict[str, str],
    **meta: Any,
) -> ImportIssueRecord:
    return ImportIssueRecord(
        severity=severity,
        code=code,
        message=message,
        entity_type=ENTITY_PERSON,
        entity_id=id_map.get(person.primary_external_key),
        meta={"key": person.primary_external_key, **meta},
    )


def validate_canonical(
    canonical: CanonicalData,
    id_map: dict[str, str],
    current_year: int | None = None,
    max_lifespan: int = 120,
) -> list[ImportIssueRecord]:
    """Run every rule over canonical and return the issues found."""
    year_now = current_year or date.today().year
    births = _subject_events(canonical, "BIRTH")
    deaths = _subject_events(canonical, "DEATH")
    issues: list[ImportIssueRecord] = []

    for p in canonical.people:
        if p.is_placeholder:
            continue
        name = p.display_name
        birth = births.get(p.primary_external_key)
        death = deaths.get(p.primary_external_key)
        birth_year = birth.date_year if birth else None
        death_year = death.date_year if death else None

        if birth is None or (birth.date_exact is None and birth.date_year is None):
            issues.append(_issue(WARNING, "MISSING_DOB", f"Missing date of birth for {name}", p, id_map))

        if death is not None and death.date_exact is None and death_year is not None:
            issues.append(_issue(INFO, "PARTIAL_DOD", f"Only year of death known for {name}", p, id_map))

        if p.gender == UNKNOWN:
            issues.append(_issue(WARNING, "MISSING_GENDER", f"Missing gender for {name}", p, id_map))

        if birth_year is not None and birth_year > year_now:
            issues.append(_issue(
                ERROR, "FUTURE_BIRTH",
                f"Birth year {birth_year} is in the future for {name}", p, id_map,
                birth_year=birth_year,
            ))
        if death_year is not None and death_year > year_now:
            issues.append(_issue(
                ERROR, "FUTURE_DEATH",
                f"Death year {death_year} is in the future for {name}", p, id_map,
                death_year=death_year,
            ))

        if birth_year is not None and death_year is not None:
            if death_year < birth_year:
                issues.append(_issue(
                    ERROR, "DEATH_BEFORE_BIRTH",
                    f"Death ({death_year}) before birth ({birth_year}) for {name}", p, id_map,
                    birth_year=birth_year, death_year=death_year,
                ))
            elif death_year - birth_year > max_lifespan:
                lifespan = death_year - birth_year
                issues.append(_issue(
                    ERROR, "IMPOSSIBLE_LIFESPAN",
                    f"Impossible lifespan of {lifespan} years for {name} "
                    f"(born {birth_year}, died {death_year})", p, id_map,
                    birth_year=birth_year, death_year=death_year, lifespan=lifespan,
                ))

    issues.extend(_parent_after_child(canonical, births, id_map))
    issues.extend(_possible_duplicates(canonical, births, id_map))
    return issues


def _parent_after_child(
    canonical: CanonicalData,
    births: dict[str, EventCandidate],
    id_map: dict[str, str],
) -> list[ImportIssueRecord]:
    issues: list[ImportIssueRecord] = []
    for edge in canonical.parent_child:
        child = canonical.person(edge.child_key)
        if child is None or child.is_placeholder:
            continue
        parent = canonical.person(edge.parent_key)
        if parent is not None and parent.is_placeholder:
            continue
        child_birth = births.get(edge.child_key)
        parent_birth = births.get(edge.parent_key)
        if child_birth is None or parent_birth is None:
            continue
        if child_birth.date_year is None or parent_birth.date_year is None:
            continue
        if parent_birth.date_year >= child_birth.date_year:
            issues.append(_issue(
                ERROR, "PARENT_AFTER_CHILD",
                f"Parent {edge.parent_key} (born {parent_birth.date_year}) is not older than "
                f"child {child.display_name} (born {child_birth.date_year})",
                child, id_map,
                parent_key=edge.parent_key, child_key=edge.child_key,
            ))
    return issues


def _possible_duplicates(
    canonical: CanonicalData,
    births: dict[str, EventCandidate],
    id_map: dict[str, str],
) -> list[ImportIssueRecord]:
    groups: dict[tuple[str, int], list[PersonCandidate]] = defaultdict(list)
    for p in canonical.people:
        if p.is_placeholder:
            continue
        birth = births.get(p.primary_external_key)
        name_key = display_name_key(p.display_name)
        if name_key is None or birth is None or birth.date_year is None:
            continue
        groups[(name_key, birth.date_year)].append(p)

    issues: list[ImportIssueRecord] = []
    for (name_key, year), members in groups.items():
        if len(members) < 2:
            continue
        keys = [m.primary_external_key for m in members]
        for m in members:
            others = [k for k in keys if k != m.primary_external_key]
            issues.append(_issue(
                INFO, "POSSIBLE_DUPLICATE",
                f"{m.display_name} may duplicate {', '.join(others)} (same name, born {year})",
                m, id_map,
                others=others, birth_year=year,
            ))
    return issues


def write_issues(
    conn: Any,
    import_run_id: str,
    issues: list[ImportIssueRecord],
    batch_size: int,
) -> int:
    """Replace all stored issues with this run's set; return the number written."""
    with conn.transaction():
        conn.execute("DELETE FROM import_issue")

    written = 0
    for chunk in chunked(issues, batch_size):
        with conn.transaction():
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO import_issue
                        (import_run_id, severity, code, message, entity_type, entity_id, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    [
                        (
                            import_run_id, i.severity, i.code, i.message,
                            i.entity_type, i.entity_id, json.dumps(i.meta, default=str),
                        )
                        for i in chunk
                    ],
                )
        written += len(chunk)
    return written
