"""lineage_etl.upsert

Idempotent, batched writes of extracted candidates into the canonical graph.

Each chunk of at most batch_size items is one `with conn.transaction():`
block on an autocommit connection, so every chunk commits on its own.  A
chunk that fails is rolled back, recorded in counters and skipped; earlier
chunks stay committed.  A closed or broken connection is fatal.

Inside a chunk, every item runs under its own SAVEPOINT so a constraint
violation on one item only skips that item.

Write order (callers must follow it): people -> events -> parent_child ->
partnerships -> contacts.  Every later step resolves external keys through
the id map returned by upsert_people.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, TypeVar

import psycopg

from lineage_etl.extract import (
    ROLE_SPOUSE,
    ContactCandidate,
    EventCandidate,
    ParentChildCandidate,
    PartnershipCandidate,
    PersonCandidate,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 50
DEFAULT_STATEMENT_TIMEOUT_MS = 30_000


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class UpsertCounters:
    # Raw archive
    sheets_archived: int = 0
    raw_rows_inserted: int = 0
    # Canonical graph
    people_created: int = 0
    people_updated: int = 0
    events_created: int = 0
    events_updated: int = 0
    parent_child_inserted: int = 0
    parent_child_existing: int = 0
    partnerships_upserted: int = 0
    spouse_links_inserted: int = 0
    contacts_upserted: int = 0
    issues_written: int = 0
    # Error buckets
    missing_refs: int = 0
    items_skipped: int = 0
    batch_failures: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d

    def add(self, tally: Counter) -> None:
        for name, n in tally.items():
            setattr(self, name, getattr(self, name) + n)


# ---------------------------------------------------------------------------
# Chunking + transaction helpers
# ---------------------------------------------------------------------------

def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield successive lists of at most size items."""
    if size <= 0:
        raise ValueError(f"chunk size must be > 0, got {size}")
    chunk: list[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def set_statement_timeout(conn: Any, timeout_ms: int) -> None:
    """Apply statement_timeout to the current transaction only."""
    conn.execute("SELECT set_config('statement_timeout', %s, true)", (f"{int(timeout_ms)}ms",))


def run_in_chunks(
    conn: Any,
    items: list[T],
    batch_size: int,
    counters: UpsertCounters,
    label: str,
    write_chunk: Callable[[list[T], Counter], dict[str, Any]],
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
) -> dict[str, Any]:
    """Run write_chunk once per chunk, each in its own transaction.

    write_chunk returns the key -> id pairs it wrote and bumps a per-chunk
    tally; both are only merged into the results once the chunk commits.
    """
    results: dict[str, Any] = {}
    for n, chunk in enumerate(chunked(items, batch_size), start=1):
        tally: Counter = Counter()
        try:
            with conn.transaction():
                set_statement_timeout(conn, statement_timeout_ms)
                written = write_chunk(chunk, tally)
        except psycopg.Error as exc:
            if conn.closed or conn.broken:
                raise
            counters.batch_failures += 1
            counters.warnings.append(f"{label} batch {n} failed ({len(chunk)} items): {exc}")
            log.warning("%s batch %d failed, rolled back: %s", label, n, exc)
            continue
        results.update(written)
        counters.add(tally)
    return results


def _with_savepoint(
    conn: Any,
    name: str,
    tally: Counter,
    warnings: list[str],
    describe: str,
    fn: Callable[[], T],
) -> T | None:
    conn.execute(f"SAVEPOINT {name}")
    try:
        result = fn()
        conn.execute(f"RELEASE SAVEPOINT {name}")
        return result
    except psycopg.Error as exc:
        if conn.closed or conn.broken:
            raise
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        tally["items_skipped"] += 1
        warnings.append(f"{describe} skipped: {exc}")
        return None


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------

_PERSON_COLUMNS = (
    "primary_external_key", "source_system", "external_id", "surname",
    "given_name_1", "given_name_2", "given_name_3", "known_as",
    "preferred_name", "display_name", "gender", "is_placeholder",
    "biography_md", "biography_short_md", "residency_text",
    "legacy_generation", "generation_from_founder", "descendant_generation",
    "length_metric", "raw_name_string", "branch_root_external_id",
)

# Columns that must never regress to NULL on re-import
_PERSON_COALESCE = (
    "surname", "given_name_1", "given_name_2", "given_name_3", "known_as",
    "preferred_name", "biography_md", "biography_short_md", "residency_text",
    "legacy_generation", "generation_from_founder", "descendant_generation",
    "length_metric", "raw_name_string", "branch_root_external_id",
)

_UPSERT_PERSON_SQL = (
    "INSERT INTO person ({cols}) VALUES ({params}) "
    "ON CONFLICT (primary_external_key) DO UPDATE SET "
    "source_system = EXCLUDED.source_system, "
    "external_id = EXCLUDED.external_id, "
    "display_name = EXCLUDED.display_name, "
    "gender = CASE WHEN EXCLUDED.gender <> 'UNKNOWN' THEN EXCLUDED.gender ELSE person.gender END, "
    "is_placeholder = EXCLUDED.is_placeholder, "
    "{coalesce}, "
    "updated_at = now() "
    "RETURNING id, (xmax = 0) AS inserted"
).format(
    cols=", ".join(_PERSON_COLUMNS),
    params=", ".join(["%s"] * len(_PERSON_COLUMNS)),
    coalesce=", ".join(f"{c} = COALESCE(EXCLUDED.{c}, person.{c})" for c in _PERSON_COALESCE),
)


def upsert_person(conn: Any, person: PersonCandidate) -> tuple[str, bool]:
    """Upsert one person by primary_external_key; return (id, created)."""
    row = conn.execute(
        _UPSERT_PERSON_SQL,
        tuple(getattr(person, c) for c in _PERSON_COLUMNS),
    ).fetchone()
    return str(row[0]), bool(row[1])


def upsert_people(
    conn: Any,
    people: list[PersonCandidate],
    batch_size: int,
    counters: UpsertCounters,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
) -> dict[str, str]:
    """Upsert all people; return external key -> person id."""

    def write(chunk: list[PersonCandidate], tally: Counter) -> dict[str, str]:
        out: dict[str, str] = {}
        for p in chunk:
            person_id, created = upsert_person(conn, p)
            out[p.primary_external_key] = person_id
            tally["people_created" if created else "people_updated"] += 1
        return out

    return run_in_chunks(conn, people, batch_size, counters, "people", write, statement_timeout_ms)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def find_event(conn: Any, person_id: str, role: str, type_: str) -> str | None:
    """Existing event for (person, role, type), linked via person_event."""
    row = conn.execute(
        """
        SELECT e.id
        FROM person_event pe
        JOIN event e ON e.id = pe.event_id
        WHERE pe.person_id = %s AND pe.role = %s AND e.type = %s
        ORDER BY e.created_at, e.id
        LIMIT 1
        """,
        (person_id, role, type_),
    ).fetchone()
    return str(row[0]) if row else None


def upsert_event(conn: Any, person_id: str, event: EventCandidate) -> tuple[str, bool]:
    """Find-then-write one event; assumes a single writer.  Returns (id, created).

    An existing event takes all six date columns from the candidate together,
    so a less precise re-entry ("c1900" after "12/03/1900") clears the old
    month/day.  A candidate with no date at all leaves the stored date alone.
    """
    params = (
        event.date_exact, event.date_year, event.date_month, event.date_day,
        event.date_text, event.date_is_approx,
    )
    event_id = find_event(conn, person_id, event.role, event.type)
    if event_id is not None:
        if event.has_date:
            conn.execute(
                """
                UPDATE event SET
                    date_exact     = %s,
                    date_year      = %s,
                    date_month     = %s,
                    date_day       = %s,
                    date_text      = %s,
                    date_is_approx = %s,
                    updated_at     = now()
                WHERE id = %s
                """,
                params + (event_id,),
            )
        return event_id, False

    row = conn.execute(
        """
        INSERT INTO event
            (type, date_exact, date_year, date_month, date_day, date_text, date_is_approx)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (event.type,) + params,
    ).fetchone()
    event_id = str(row[0])
    conn.execute(
        """
        INSERT INTO person_event (person_id, event_id, role)
        VALUES (%s, %s, %s)
        ON CONFLICT (person_id, event_id, role) DO NOTHING
        """,
        (person_id, event_id, event.role),
    )
    return event_id, True


def upsert_events(
    conn: Any,
    events: list[EventCandidate],
    id_map: dict[str, str],
    batch_size: int,
    counters: UpsertCounters,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
) -> dict[str, str]:
    """Upsert events; return event key -> event id."""

    def write(chunk: list[EventCandidate], tally: Counter) -> dict[str, str]:
        out: dict[str, str] = {}
        for idx, ev in enumerate(chunk):
            person_id = id_map.get(ev.person_key)
            if person_id is None:
                tally["missing_refs"] += 1
                continue
            res = _with_savepoint(
                conn, f"ev_{idx}", tally, counters.warnings, f"event {ev.key}",
                lambda: upsert_event(conn, person_id, ev),
            )
            if res is None:
                continue
            event_id, created = res
            out[ev.key] = event_id
            tally["events_created" if created else "events_updated"] += 1
        return out

    return run_in_chunks(conn, events, batch_size, counters, "events", write, statement_timeout_ms)


# ---------------------------------------------------------------------------
# Parent / child
# ---------------------------------------------------------------------------

def upsert_parent_child(
    conn: Any,
    edges: list[ParentChildCandidate],
    id_map: dict[str, str],
    batch_size: int,
    counters: UpsertCounters,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
) -> dict[str, str]:
    """Insert parent/child edges; an existing edge keeps its original type."""

    def write(chunk: list[ParentChildCandidate], tally: Counter) -> dict[str, str]:
        out: dict[str, str] = {}
        for idx, edge in enumerate(chunk):
            parent_id = id_map.get(edge.parent_key)
            child_id = id_map.get(edge.child_key)
            if parent_id is None or child_id is None:
                tally["missing_refs"] += 1
                continue

            def insert() -> str:
                row = conn.execute(
                    """
                    INSERT INTO parent_child (parent_id, child_id, type)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (parent_id, child_id) DO NOTHING
                    RETURNING id
                    """,
                    (parent_id, child_id, edge.type),
                ).fetchone()
                # Empty string: edge already present
                return str(row[0]) if row else ""

            res = _with_savepoint(
                conn, f"pc_{idx}", tally, counters.warnings,
                f"parent_child {edge.parent_key}->{edge.child_key}", insert,
            )
            if res is None:
                continue
            if res:
                out[f"{edge.parent_key}>{edge.child_key}"] = res
                tally["parent_child_inserted"] += 1
            else:
                tally["parent_child_existing"] += 1
        return out

    return run_in_chunks(conn, edges, batch_size, counters, "parent_child", write, statement_timeout_ms)


# ---------------------------------------------------------------------------
# Partnerships
# ---------------------------------------------------------------------------

def upsert_partnership(
    conn: Any,
    person_a_id: str,
    person_b_id: str,
    type_: str,
    marriage_event_id: str | None,
    notes_md: str | None,
) -> str:
    """Upsert one partnership on the ordered id pair; fills null notes/marriage only."""
    low, high = sorted((person_a_id, person_b_id))
    row = conn.execute(
        """
        INSERT INTO partnership (person_a_id, person_b_id, type, marriage_event_id, notes_md)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (person_a_id, person_b_id) DO UPDATE SET
            notes_md          = COALESCE(partnership.notes_md, EXCLUDED.notes_md),
            marriage_event_id = COALESCE(partnership.marriage_event_id, EXCLUDED.marriage_event_id),
            updated_at        = now()
        RETURNING id
        """,
        (low, high, type_, marriage_event_id, notes_md),
    ).fetchone()
    return str(row[0])


def upsert_partnerships(
    conn: Any,
    partnerships: list[PartnershipCandidate],
    id_map: dict[str, str],
    event_ids: dict[str, str],
    batch_size: int,
    counters: UpsertCounters,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
) -> dict[str, str]:
    """Upsert partnerships; link the spouse to the marriage event when known."""

    def write(chunk: list[PartnershipCandidate], tally: Counter) -> dict[str, str]:
        out: dict[str, str] = {}
        for idx, p in enumerate(chunk):
            a_id = id_map.get(p.person_a_key)
            b_id = id_map.get(p.person_b_key)
            if a_id is None or b_id is None or a_id == b_id:
                tally["missing_refs"] += 1
                continue
            marriage_id = event_ids.get(p.marriage_event_key) if p.marriage_event_key else None

            def write_one() -> str:
                partnership_id = upsert_partnership(conn, a_id, b_id, p.type, marriage_id, p.notes_md)
                if marriage_id is not None:
                    cur = conn.execute(
                        """
                        INSERT INTO person_event (person_id, event_id, role)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (person_id, event_id, role) DO NOTHING
                        """,
                        (b_id, marriage_id, ROLE_SPOUSE),
                    )
                    tally["spouse_links_inserted"] += cur.rowcount
                return partnership_id

            res = _with_savepoint(
                conn, f"pt_{idx}", tally, counters.warnings,
                f"partnership {p.person_a_key}+{p.person_b_key}", write_one,
            )
            if res is not None:
                out[f"{p.person_a_key}+{p.person_b_key}"] = res
                tally["partnerships_upserted"] += 1
        return out

    return run_in_chunks(conn, partnerships, batch_size, counters, "partnerships", write, statement_timeout_ms)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

def upsert_contacts(
    conn: Any,
    contacts: list[ContactCandidate],
    id_map: dict[str, str],
    batch_size: int,
    counters: UpsertCounters,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
) -> dict[str, str]:
    """Upsert one contact row per person, replacing it wholesale."""

    def write(chunk: list[ContactCandidate], tally: Counter) -> dict[str, str]:
        out: dict[str, str] = {}
        for idx, c in enumerate(chunk):
            person_id = id_map.get(c.person_key)
            if person_id is None:
                tally["missing_refs"] += 1
                continue

            def write_one() -> str:
                row = conn.execute(
                    """
                    INSERT INTO contact
                        (person_id, emails, mobile, landline, address_2000,
                         postal_address_2021, establishing_contact, comments,
                         age_current, kids_in_2000)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (person_id) DO UPDATE SET
                        emails               = EXCLUDED.emails,
                        mobile               = EXCLUDED.mobile,
                        landline             = EXCLUDED.landline,
                        address_2000         = EXCLUDED.address_2000,
                        postal_address_2021  = EXCLUDED.postal_address_2021,
                        establishing_contact = EXCLUDED.establishing_contact,
                        comments             = EXCLUDED.comments,
                        age_current          = EXCLUDED.age_current,
                        kids_in_2000         = EXCLUDED.kids_in_2000,
                        updated_at           = now()
                    RETURNING id
                    """,
                    (
                        person_id, c.emails, c.mobile, c.landline, c.address_2000,
                        c.postal_address_2021, c.establishing_contact, c.comments,
                        c.age_current, c.kids_in_2000,
                    ),
                ).fetchone()
                return str(row[0])

            res = _with_savepoint(
                conn, f"ct_{idx}", tally, counters.warnings, f"contact {c.person_key}", write_one,
            )
            if res is not None:
                out[c.person_key] = res
                tally["contacts_upserted"] += 1
        return out

    return run_in_chunks(conn, contacts, batch_size, counters, "contacts", write, statement_timeout_ms)
